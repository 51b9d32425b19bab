"""Codec for the .mixpkg archive format.

A .mixpkg is a gzip-compressed tar stream. Its first entry is
``metadata.json``; the remaining entries live under ``files/`` and map onto
the installed filesystem by stripping that prefix. Entries under
``scripts/`` are carried for build tooling only and never installed.
"""

import hashlib
import io
import json
import logging
import os
import tarfile
import time
from pathlib import Path
from typing import Iterator, Optional, Union

from pydantic import ValidationError

from mix.errors import FileOperationError, NotAPackageError
from mix.models import PackageMetadata

log = logging.getLogger("mix.archive")

METADATA_NAME = "metadata.json"
FILES_PREFIX = "files/"
SCRIPTS_PREFIX = "scripts/"

PathLike = Union[str, Path]


def sha256_file(path: PathLike) -> str:
    """Hex SHA-256 digest of a file, read in chunks"""
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def _normalize(name: str) -> str:
    return name[2:] if name.startswith("./") else name


def is_metadata_entry(name: str) -> bool:
    """Match metadata.json at the root or below a single-level prefix.

    ``files/metadata.json`` is package content installed at /metadata.json.
    """
    name = _normalize(name)
    if name.startswith(FILES_PREFIX):
        return False
    parts = name.strip("/").split("/")
    return parts[-1] == METADATA_NAME and len(parts) <= 2


def install_name(name: str) -> Optional[str]:
    """Map an archive member name to its path relative to the install root.

    Returns:
        The stripped name, or None for members that are not installed
        (metadata, scripts, the bare ``files`` directory, empty names).
    """
    name = _normalize(name)
    if name.startswith(SCRIPTS_PREFIX):
        return None
    if is_metadata_entry(name):
        return None
    if name == FILES_PREFIX.rstrip("/"):
        return None
    if name.startswith(FILES_PREFIX):
        name = name[len(FILES_PREFIX):]
    name = name.strip("/")
    if name in ("", "."):
        return None
    if ".." in name.split("/"):
        raise FileOperationError(f"archive entry escapes the install root: {name}")
    return name


def _check_confined(root: Path, target: Path) -> None:
    # Symlinks written earlier may redirect a parent outside the root
    if not target.parent.resolve().is_relative_to(root):
        raise FileOperationError(f"archive entry escapes the install root: {target}")


def _open(archive_path: PathLike) -> tarfile.TarFile:
    try:
        return tarfile.open(archive_path, "r:gz")
    except (tarfile.TarError, OSError) as e:
        raise NotAPackageError(f"{archive_path} is not a .mixpkg archive: {e}") from e


def _members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
    # Streaming iteration, the archive is never fully listed up front
    while True:
        member = tar.next()
        if member is None:
            return
        yield member


def read_metadata(archive_path: PathLike) -> PackageMetadata:
    """Decode metadata.json from a package archive.

    Args:
        archive_path: Path to the .mixpkg file

    Returns:
        The decoded metadata document

    Raises:
        NotAPackageError: the file is not a gzip tar or has no valid
            metadata.json
    """
    with _open(archive_path) as tar:
        try:
            for member in _members(tar):
                if not member.isfile() or not is_metadata_entry(member.name):
                    continue
                f = tar.extractfile(member)
                if f is None:
                    break
                try:
                    return PackageMetadata.model_validate(json.load(f))
                except (ValueError, ValidationError) as e:
                    raise NotAPackageError(
                        f"invalid metadata.json in {archive_path}: {e}"
                    ) from e
        except (tarfile.TarError, EOFError, OSError) as e:
            raise NotAPackageError(f"failed to read {archive_path}: {e}") from e

    raise NotAPackageError(f"metadata.json not found in {archive_path}")


def list_install_paths(archive_path: PathLike, root: PathLike = "/") -> list[str]:
    """Paths extract_files() would record, without touching the filesystem"""
    root = Path(root)
    paths = []
    with _open(archive_path) as tar:
        try:
            for member in _members(tar):
                name = install_name(member.name)
                if name is None:
                    continue
                if member.isfile() or member.issym():
                    paths.append(str(root / name))
        except (tarfile.TarError, EOFError) as e:
            raise NotAPackageError(f"failed to read {archive_path}: {e}") from e
    return paths


def extract_files(archive_path: PathLike, root: PathLike = "/") -> list[str]:
    """Install every file entry of a package below ``root``.

    Directories are created with their declared mode. Regular files get
    their parents created with mode 0755 and keep their entry mode.
    Symlinks replace whatever exists at the target.

    Args:
        archive_path: Path to the .mixpkg file
        root: Filesystem root the ``files/`` tree is mapped onto

    Returns:
        Absolute paths of regular files and symlinks written, in archive
        order

    Raises:
        FileOperationError: writing failed; ``paths`` holds what was
            already written
    """
    root = Path(root)
    resolved_root = root.resolve()
    written: list[str] = []

    with _open(archive_path) as tar:
        try:
            for member in _members(tar):
                name = install_name(member.name)
                if name is None:
                    continue
                target = root / name
                _check_confined(resolved_root, target)

                if member.isdir():
                    target.mkdir(mode=member.mode, parents=True, exist_ok=True)
                elif member.isfile():
                    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
                    source = tar.extractfile(member)
                    with open(target, "wb") as out:
                        while chunk := source.read(65536):
                            out.write(chunk)
                    os.chmod(target, member.mode)
                    written.append(str(target))
                elif member.issym():
                    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
                    if target.is_symlink() or target.exists():
                        target.unlink()
                    os.symlink(member.linkname, target)
                    written.append(str(target))
                else:
                    log.debug(f"Skipping unsupported entry {member.name}")
        except FileOperationError as e:
            e.paths = written
            raise
        except (tarfile.TarError, EOFError, OSError) as e:
            raise FileOperationError(
                f"failed to extract {archive_path}: {e}", paths=written
            ) from e

    log.info(f"Extracted {len(written)} files from {Path(archive_path).name}")
    return written


def create_package(
    source_dir: PathLike, output_path: PathLike, metadata: PackageMetadata
) -> Path:
    """Write a .mixpkg archive from a package source directory.

    The metadata document is the first entry, followed by the ``files/``
    subdirectory of ``source_dir`` (if present) with relative paths and
    file modes preserved.

    Args:
        source_dir: Directory containing a ``files/`` tree
        output_path: Archive to create
        metadata: Metadata document to embed

    Returns:
        Path of the written archive
    """
    source_dir = Path(source_dir)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    metadata_json = metadata.to_json().encode("utf-8")

    with tarfile.open(output_path, "w:gz") as tar:
        info = tarfile.TarInfo(name=METADATA_NAME)
        info.size = len(metadata_json)
        info.mode = 0o644
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(metadata_json))

        files_dir = source_dir / FILES_PREFIX.rstrip("/")
        if files_dir.is_dir():
            # tarfile walks directories recursively in sorted order
            tar.add(files_dir, arcname=FILES_PREFIX.rstrip("/"))

    log.info(f"Package created: {output_path}")
    return output_path
