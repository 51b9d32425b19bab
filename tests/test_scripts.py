"""Tests for lifecycle script execution through a real shell"""

import pytest

from mix.scripts import LifecycleScript, RiskLevel, ScriptStage, ShellScriptRunner


@pytest.mark.slow
def test_shell_script_success(test_path):
    marker = test_path / "ran"
    script = LifecycleScript(
        stage=ScriptStage.POST_INSTALL, body=f"touch {marker}\n", package="demo"
    )

    result = ShellScriptRunner().run(script)

    assert result.success
    assert marker.exists()


@pytest.mark.slow
def test_shell_script_failure():
    script = LifecycleScript(stage=ScriptStage.PRE_REMOVE, body="exit 7\n")

    result = ShellScriptRunner("/bin/sh").run(script)

    assert not result.success
    assert result.returncode == 7


@pytest.mark.slow
def test_manager_runs_hooks_in_shell(settings, store, add_package):
    from mix.manager import Manager

    marker = settings.root_dir / "hook-ran"
    add_package("demo", post_install=f"echo ok > {marker}\n")
    settings.cache_dir.mkdir(parents=True, exist_ok=True)

    with Manager(settings, store=store) as manager:
        manager.install("demo")

    assert marker.read_text() == "ok\n"


def test_script_defaults():
    script = LifecycleScript(stage=ScriptStage.PRE_INSTALL, body="true")

    assert script.risk is RiskLevel.SHELL
    assert script.stage.value == "pre-install"
