"""Repository index generation.

A repository is a flat directory of ``name-version.mixpkg`` files plus an
``index.json`` listing one catalog record per archive.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from mix import archive
from mix.errors import MixError
from mix.models import PackageRecord

log = logging.getLogger("mix.repository")

INDEX_NAME = "index.json"


def build_index(repo_dir: Union[str, Path]) -> list[PackageRecord]:
    """
    Build catalog records for every archive in a repository directory.

    Checksum and size are computed from the archive itself, not taken from
    the embedded metadata.

    Args:
        repo_dir: Directory containing .mixpkg files

    Returns:
        One record per readable archive, sorted by file name
    """
    records = []
    for path in sorted(Path(repo_dir).glob("*.mixpkg")):
        try:
            metadata = archive.read_metadata(path)
        except MixError as e:
            log.warning(f"Skipping {path.name}: {e}")
            continue

        record = metadata.to_record(size=path.stat().st_size)
        record.checksum = archive.sha256_file(path)
        records.append(record)

    log.info(f"Indexed {len(records)} packages in {repo_dir}")
    return records


def index_json(records: list[PackageRecord]) -> str:
    return json.dumps([record.model_dump() for record in records], indent=2)


def write_index(repo_dir: Union[str, Path]) -> Path:
    """Write ``index.json`` into the repository directory.

    The file is written next to its destination and renamed into place so
    clients never read a partial index.
    """
    repo_dir = Path(repo_dir)
    index_path = repo_dir / INDEX_NAME
    content = index_json(build_index(repo_dir))

    fd, tmp_path = tempfile.mkstemp(dir=repo_dir, prefix=".index-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, index_path)
    except OSError:
        os.unlink(tmp_path)
        raise

    log.info(f"Wrote {index_path}")
    return index_path
