"""Lifecycle script execution.

Package hooks (pre-install, post-install, pre-remove, post-remove) are shell
script bodies carried inline in metadata.json. They are modelled as a
LifecycleScript capability and executed through the ScriptRunner protocol so
a stricter runner (chroot, namespaces, dry-run) can replace the default one
without touching the transaction engine.
"""

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

log = logging.getLogger("mix.scripts")


class RiskLevel(Enum):
    """What a script is allowed to touch"""

    # Arbitrary shell code with the privileges of the package manager
    SHELL = "shell"


class ScriptStage(str, Enum):
    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_REMOVE = "pre-remove"
    POST_REMOVE = "post-remove"


@dataclass(frozen=True)
class LifecycleScript:
    stage: ScriptStage
    body: str
    package: str = ""
    risk: RiskLevel = RiskLevel.SHELL


@dataclass
class ScriptResult:
    returncode: int

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ScriptRunner(Protocol):
    """Executes lifecycle scripts.

    Implementations decide how much of the system a script may see; the
    engine only looks at the return code.
    """

    def run(self, script: LifecycleScript) -> ScriptResult:
        ...


class ShellScriptRunner:
    """Run scripts through a shell with inherited stdout/stderr"""

    def __init__(self, shell: str = "/bin/sh"):
        self.shell = shell

    def run(self, script: LifecycleScript) -> ScriptResult:
        fd, path = tempfile.mkstemp(prefix=f"mix-script-{script.stage.value}-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(script.body)
            os.chmod(path, 0o755)

            log.info(f"Running {script.stage.value} script for {script.package or 'package'}")
            r = subprocess.run([self.shell, path], check=False)
            if r.returncode != 0:
                log.error(f"{script.stage.value} script exited with {r.returncode}")
            return ScriptResult(returncode=r.returncode)
        finally:
            os.unlink(path)
