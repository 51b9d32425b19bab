"""
Transaction engine for mix

The Manager applies one install, remove or upgrade at a time:

- install: download (or reuse the cached archive), verify its checksum,
  read its metadata, run hooks, write files and record the result
- remove: run hooks, delete files in reverse order and drop the ledger entry
- upgrade: remove followed by install (not atomic)

It also synchronizes the catalog with the repository index and answers
queries on behalf of the CLI.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Optional

import requests

from mix import archive
from mix.config import Settings
from mix.database import PackageStore
from mix.errors import (
    AlreadyInstalledError,
    ChecksumMismatchError,
    DownloadFailedError,
    FileConflictError,
    FileOperationError,
    MixError,
    NotFoundError,
    NotInstalledError,
    OperationCancelledError,
    PackageNotFoundError,
    RecordFailedError,
    ScriptFailureError,
)
from mix.models import PackageRecord, PackageUpgrade, SearchResult
from mix.package_resolution import PackageResolver, compare_versions
from mix.progress import ProgressObserver, ProgressUpdate, Stage
from mix.scripts import LifecycleScript, ScriptRunner, ScriptStage, ShellScriptRunner

log = logging.getLogger("mix.manager")


class Manager:
    """Package manager bound to one catalog, cache and install root.

    Operations run sequentially; a Manager must be the only writer of its
    database file.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[PackageStore] = None,
        runner: Optional[ScriptRunner] = None,
        observer: Optional[ProgressObserver] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the manager.

        Args:
            settings: Immutable configuration
            store: Package store, opened from settings.database_path if None
            runner: Lifecycle script runner, a ShellScriptRunner if None
            observer: Callable receiving ProgressUpdate events
            session: HTTP session used for the repository
        """
        self.settings = settings
        self.store = store or PackageStore(settings.database_path)
        self.runner = runner or ShellScriptRunner(settings.shell)
        self.observer = observer
        self.http = session or requests.Session()
        self.cache_dir = Path(settings.cache_dir)
        self.root_dir = Path(settings.root_dir)
        self.repo_url = settings.repo_url.rstrip("/")

    def close(self) -> None:
        self.http.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def set_observer(self, observer: Optional[ProgressObserver]) -> None:
        """Register a progress observer, None disables reporting"""
        self.observer = observer

    def _emit(self, package: str, stage: Stage, percent: float, message: str) -> None:
        log.debug(f"{package}: [{stage.value}] {message}")
        if self.observer is not None:
            self.observer(ProgressUpdate(stage, percent, message, package))

    @staticmethod
    def _checkpoint(cancel: Optional[threading.Event], stage: Stage) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelledError(stage.value)

    # Install / remove / upgrade

    def install(self, name: str, cancel: Optional[threading.Event] = None) -> list[str]:
        """
        Install a single package (dependencies are not followed).

        Args:
            name: Catalog package name
            cancel: Checked between stages, a set event aborts the install

        Returns:
            Paths written to the filesystem

        Raises:
            AlreadyInstalledError, NotFoundError, DownloadFailedError,
            ChecksumMismatchError, NotAPackageError, FileConflictError,
            ScriptFailureError, FileOperationError, RecordFailedError,
            OperationCancelledError
        """
        if self.store.is_installed(name):
            raise AlreadyInstalledError(f"package {name} is already installed")

        try:
            info = self.store.get(name)
        except NotFoundError as e:
            raise NotFoundError(f"package {name} not found in database") from e

        self._emit(name, Stage.START, 0.0, "Starting installation")

        self._checkpoint(cancel, Stage.DOWNLOAD)
        self._emit(name, Stage.DOWNLOAD, 0.0, f"Downloading {name} {info.version}")
        package_path = self._download_package(name, info.version)

        self._checkpoint(cancel, Stage.VERIFY)
        self._emit(name, Stage.VERIFY, 0.25, "Verifying checksum")
        if info.checksum:
            self._verify_checksum(package_path, info.checksum)
        else:
            log.info(f"No checksum declared for {name}, skipping verification")

        self._checkpoint(cancel, Stage.EXTRACT)
        self._emit(name, Stage.EXTRACT, 0.5, "Extracting package")
        metadata = archive.read_metadata(package_path)

        planned = archive.list_install_paths(package_path, self.root_dir)
        conflicts = {
            path: owner
            for path, owner in self.store.file_owners(planned).items()
            if owner != name
        }
        if conflicts:
            raise FileConflictError(name, conflicts)

        if metadata.pre_install:
            self._checkpoint(cancel, Stage.PRE_INSTALL)
            self._emit(name, Stage.PRE_INSTALL, 0.5, "Running pre-install script")
            self._run_script(name, ScriptStage.PRE_INSTALL, metadata.pre_install)

        self._checkpoint(cancel, Stage.INSTALL)
        self._emit(name, Stage.INSTALL, 0.75, "Installing files")
        installed_files = archive.extract_files(package_path, self.root_dir)

        # Files are on disk now, failing here must take them back out
        try:
            if metadata.post_install:
                self._checkpoint(cancel, Stage.POST_INSTALL)
                self._emit(name, Stage.POST_INSTALL, 0.75, "Running post-install script")
                self._run_script(name, ScriptStage.POST_INSTALL, metadata.post_install)
            self._checkpoint(cancel, Stage.RECORD)
        except (ScriptFailureError, OperationCancelledError):
            log.warning(f"Rolling back {len(installed_files)} files of {name}")
            self._rollback_files(installed_files)
            raise

        self._emit(name, Stage.RECORD, 0.9, "Recording installation")
        config_files = self._config_paths(metadata.config_files, installed_files)
        try:
            self.store.record_install(
                name,
                info.version,
                installed_files,
                config_files=config_files,
                pre_remove=metadata.pre_remove,
                post_remove=metadata.post_remove,
            )
        except Exception as e:
            raise RecordFailedError(
                f"failed to record installation of {name}: {e}"
            ) from e

        self._emit(name, Stage.DONE, 1.0, "Installation complete")
        log.info(f"Installed {name} {info.version}")
        return installed_files

    def remove(
        self, name: str, purge: bool = False, cancel: Optional[threading.Event] = None
    ) -> None:
        """
        Remove an installed package.

        Files are deleted in reverse install order. Files the package tagged
        as configuration are kept unless ``purge`` is set.

        Args:
            name: Installed package name
            purge: Also delete configuration files
            cancel: Checked between stages

        Raises:
            NotInstalledError, ScriptFailureError, FileOperationError,
            RecordFailedError, OperationCancelledError
        """
        try:
            installed = self.store.get_installed(name)
        except NotFoundError as e:
            raise NotInstalledError(f"package {name} is not installed") from e

        self._emit(name, Stage.START, 0.0, "Starting removal")

        if installed.pre_remove:
            self._checkpoint(cancel, Stage.PRE_REMOVE)
            self._emit(name, Stage.PRE_REMOVE, 0.1, "Running pre-remove script")
            self._run_script(name, ScriptStage.PRE_REMOVE, installed.pre_remove)

        self._checkpoint(cancel, Stage.REMOVE_FILES)
        self._emit(name, Stage.REMOVE_FILES, 0.5, "Removing files")
        keep = set() if purge else set(installed.config_files)
        self._remove_files([path for path in installed.files if path not in keep])
        if keep:
            log.info(f"Keeping {len(keep)} configuration files of {name}")

        if installed.post_remove:
            self._checkpoint(cancel, Stage.POST_REMOVE)
            self._emit(name, Stage.POST_REMOVE, 0.8, "Running post-remove script")
            self._run_script(name, ScriptStage.POST_REMOVE, installed.post_remove)

        self._checkpoint(cancel, Stage.RECORD)
        self._emit(name, Stage.RECORD, 0.9, "Updating database")
        try:
            self.store.remove_install(name)
        except Exception as e:
            raise RecordFailedError(f"failed to update database for {name}: {e}") from e

        self._emit(name, Stage.DONE, 1.0, "Removal complete")
        log.info(f"Removed {name}")

    def upgrade(self, name: str, cancel: Optional[threading.Event] = None) -> list[str]:
        """Remove then reinstall from the current catalog entry.

        Not atomic: if the install fails the package stays removed.
        """
        self.remove(name, purge=False, cancel=cancel)
        return self.install(name, cancel=cancel)

    def install_many(self, names: list[str], cancel: Optional[threading.Event] = None) -> None:
        """Install packages in order, stopping at the first failure"""
        for name in names:
            self.install(name, cancel=cancel)

    def remove_many(
        self, names: list[str], purge: bool = False, cancel: Optional[threading.Event] = None
    ) -> None:
        for name in names:
            self.remove(name, purge=purge, cancel=cancel)

    def upgrade_many(self, names: list[str], cancel: Optional[threading.Event] = None) -> None:
        for name in names:
            self.upgrade(name, cancel=cancel)

    # Transaction steps

    def _download_package(self, name: str, version: str) -> Path:
        """Return the cached archive, downloading it first if needed"""
        filename = f"{name}-{version}.mixpkg"
        package_path = self.cache_dir / filename

        if package_path.exists():
            log.info(f"Using cached {package_path}")
            return package_path

        url = f"{self.repo_url}/{filename}"
        log.info(f"Downloading {url}")
        try:
            response = self.http.get(url, stream=True, timeout=self.settings.http_timeout)
        except requests.RequestException as e:
            raise DownloadFailedError(f"failed to download {url}: {e}") from e

        partial = package_path.with_name(filename + ".part")
        with response:
            if response.status_code != 200:
                raise PackageNotFoundError(
                    f"package {filename} not found in repository (HTTP {response.status_code})"
                )
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=65536):
                        f.write(chunk)
                partial.replace(package_path)
            except (requests.RequestException, OSError) as e:
                partial.unlink(missing_ok=True)
                raise DownloadFailedError(f"failed to download {url}: {e}") from e

        log.info(f"Saved {package_path}")
        return package_path

    def _verify_checksum(self, path: Path, expected: str) -> None:
        actual = archive.sha256_file(path)
        if actual != expected.lower():
            # Evict so the next attempt downloads a fresh copy
            path.unlink(missing_ok=True)
            raise ChecksumMismatchError(str(path), expected, actual)
        log.info(f"Checksum verified: {path.name}")

    def _run_script(self, name: str, stage: ScriptStage, body: str) -> None:
        result = self.runner.run(LifecycleScript(stage=stage, body=body, package=name))
        if not result.success:
            raise ScriptFailureError(stage.value, result.returncode)

    def _config_paths(self, declared: list[str], written: list[str]) -> list[str]:
        """Map declared absolute config paths onto the install root"""
        targets = {str(self.root_dir / path.lstrip("/")) for path in declared}
        return [path for path in written if path in targets]

    @staticmethod
    def _rollback_files(files: list[str]) -> None:
        for path in reversed(files):
            try:
                os.unlink(path)
            except OSError:
                pass

    def _remove_files(self, files: list[str]) -> None:
        """Delete files deepest-first, pruning parents that became empty"""
        root = self.root_dir.resolve()
        for path in reversed(files):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise FileOperationError(f"failed to remove {path}: {e}", paths=[path]) from e

            parent = Path(path).parent
            if parent.resolve() != root:
                try:
                    parent.rmdir()
                except OSError:
                    pass

    # Catalog

    def update_database(self) -> int:
        """
        Synchronize the catalog with the repository index.

        Falls back to scanning cached archives when the index cannot be
        fetched or parsed.

        Returns:
            Number of catalog records written
        """
        index_url = f"{self.repo_url}/index.json"
        try:
            response = self.http.get(index_url, timeout=self.settings.http_timeout)
            if response.status_code != 200:
                raise DownloadFailedError(f"HTTP {response.status_code}")
            records = [PackageRecord.model_validate(item) for item in response.json()]
        except (requests.RequestException, ValueError, TypeError, MixError) as e:
            log.warning(f"Failed to fetch {index_url} ({e}), scanning local packages")
            return self._scan_local_packages()

        count = self.store.upsert_many(records)
        log.info(f"Updated catalog with {count} packages from {index_url}")
        return count

    def _scan_local_packages(self) -> int:
        records = []
        for path in sorted(self.cache_dir.glob("*.mixpkg")):
            try:
                metadata = archive.read_metadata(path)
                records.append(metadata.to_record(size=path.stat().st_size))
            except (MixError, ValueError, OSError) as e:
                log.warning(f"Skipping {path.name}: {e}")
        count = self.store.upsert_many(records)
        log.info(f"Updated catalog with {count} packages from {self.cache_dir}")
        return count

    # Resolution

    def resolve_dependencies(self, names: list[str]) -> list[str]:
        return PackageResolver(self.store).resolve(names)

    def remove_order(self, names: list[str]) -> list[str]:
        return PackageResolver(self.store).remove_order(names)

    def missing_dependencies(self, name: str) -> list[str]:
        return PackageResolver(self.store).missing_dependencies(name)

    def reverse_dependencies(self, name: str) -> list[str]:
        return self.store.reverse_dependencies(name)

    # Upgrades

    def check_upgrade(self, name: str) -> Optional[PackageUpgrade]:
        """Return the pending upgrade for an installed package, if any.

        Raises:
            NotInstalledError: name is not installed
            NotFoundError: name is not in the catalog
        """
        try:
            installed = self.store.get_installed(name)
        except NotFoundError as e:
            raise NotInstalledError(f"package {name} is not installed") from e
        try:
            available = self.store.get(name)
        except NotFoundError as e:
            raise NotFoundError(f"package {name} not in repository") from e

        if compare_versions(available.version, installed.version) > 0:
            return PackageUpgrade(
                name=name,
                current_version=installed.version,
                new_version=available.version,
            )
        return None

    def upgradable_packages(self) -> list[PackageUpgrade]:
        upgrades = []
        for package in self.store.list_installed():
            try:
                upgrade = self.check_upgrade(package.name)
            except MixError as e:
                log.debug(f"Skipping {package.name}: {e}")
                continue
            if upgrade is not None:
                upgrades.append(upgrade)
        return upgrades

    # Queries

    def is_installed(self, name: str) -> bool:
        return self.store.is_installed(name)

    def search(self, query: str, installed_only: bool = False) -> list[SearchResult]:
        return self.store.search(query, installed_only)

    def list_installed(self) -> list[PackageRecord]:
        return self.store.list_installed()

    def list_available(self) -> list[PackageRecord]:
        return self.store.list_available()

    def package_info(self, name: str) -> PackageRecord:
        """Ledger view of an installed package, else its catalog entry"""
        try:
            installed = self.store.get_installed(name)
        except NotFoundError:
            try:
                return self.store.get(name)
            except NotFoundError as e:
                raise NotFoundError(f"package {name} not found") from e

        try:
            catalog = self.store.get(name)
        except NotFoundError:
            catalog = None
        return PackageRecord(
            name=installed.name,
            version=installed.version,
            description=catalog.description if catalog else "",
            dependencies=catalog.dependencies if catalog else [],
            files=installed.files,
            checksum=catalog.checksum if catalog else "",
            size=catalog.size if catalog else 0,
            installed=True,
        )

    def package_files(self, name: str) -> list[str]:
        try:
            return self.store.installed_files(name)
        except NotFoundError as e:
            raise NotInstalledError(f"package {name} is not installed") from e
