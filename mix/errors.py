"""Error taxonomy for the package manager.

Every engine failure derives from MixError so the CLI can print a single
wrapped message and exit non-zero. Each class carries a stable ``code``.
"""

from typing import Optional


class MixError(Exception):
    """Base class for all package manager errors"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(MixError):
    """Configuration file missing or invalid"""

    code = "CONFIG_ERROR"


class NotFoundError(MixError):
    """Unknown package in the catalog or the ledger"""

    code = "NOT_FOUND"


class PackageNotFoundError(NotFoundError):
    """The repository has no archive for the requested package"""

    code = "PACKAGE_NOT_FOUND"


class AlreadyInstalledError(MixError):
    code = "ALREADY_INSTALLED"


class NotInstalledError(MixError):
    code = "NOT_INSTALLED"


class CircularDependencyError(MixError):
    """Dependency graph contains a cycle"""

    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"circular dependency detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class ChecksumMismatchError(MixError):
    code = "CHECKSUM_MISMATCH"

    def __init__(self, path: str, expected: str, actual: str) -> None:
        super().__init__(
            f"checksum mismatch for {path}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class DownloadFailedError(MixError):
    code = "DOWNLOAD_FAILED"


class ScriptFailureError(MixError):
    """A lifecycle script exited non-zero"""

    code = "SCRIPT_FAILURE"

    def __init__(self, stage: str, returncode: int) -> None:
        super().__init__(f"{stage} script failed with exit code {returncode}")
        self.stage = stage
        self.returncode = returncode


class RecordFailedError(MixError):
    """Ledger write failed after the filesystem was already modified"""

    code = "RECORD_FAILED"


class FileOperationError(MixError):
    """Extraction, write or delete failure on the target filesystem"""

    code = "IO_ERROR"

    def __init__(self, message: str, paths: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.paths = paths or []


class NotAPackageError(MixError):
    """File is not a readable .mixpkg archive"""

    code = "NOT_A_PACKAGE"


class FileConflictError(MixError):
    """Paths already owned by another installed package"""

    code = "FILE_CONFLICT"

    def __init__(self, package: str, conflicts: dict[str, str]) -> None:
        details = ", ".join(f"{path} ({owner})" for path, owner in conflicts.items())
        super().__init__(
            f"package {package} would overwrite files owned by other packages: {details}"
        )
        self.package = package
        self.conflicts = conflicts


class OperationCancelledError(MixError):
    code = "CANCELLED"

    def __init__(self, stage: str) -> None:
        super().__init__(f"operation cancelled before {stage}")
        self.stage = stage
