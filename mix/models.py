"""
Data model shared by the store, the archive codec and the engine.

Catalog records come from the repository index (or from scanning cached
archives), ledger records are written by install transactions and the
metadata document travels inside every .mixpkg archive.
"""

import json
from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, Field

NAME_PATTERN = r"^[a-z0-9][a-z0-9-]*$"


class PackageRecord(BaseModel):
    """A catalog entry, keyed by name"""

    name: Annotated[
        str,
        Field(
            examples=["base-files", "openssh", "iptables"],
            description="Unique package name (lowercase, digits, hyphen)",
            pattern=NAME_PATTERN,
        ),
    ]
    version: Annotated[
        str,
        Field(
            examples=["1.0.0", "9.6"],
            description="Dotted numeric version with any number of segments",
        ),
    ]
    description: str = ""
    dependencies: Annotated[
        list[str],
        Field(
            examples=[["base-files", "openssl>=3.0"]],
            description="""
                Dependency specifiers, optionally suffixed with a comparison
                operator and a version.
            """.strip(),
        ),
    ] = []
    files: list[str] = []
    checksum: str = ""
    size: int = 0

    # Filled in by listing queries, never part of the index document
    installed: bool = Field(default=False, exclude=True)


class InstalledRecord(BaseModel):
    """A ledger entry written by a successful install"""

    name: str
    version: str
    install_time: datetime
    files: list[str] = []
    config_files: list[str] = []
    pre_remove: str = ""
    post_remove: str = ""


class PackageMetadata(BaseModel):
    """The metadata.json document embedded in a .mixpkg archive"""

    name: str
    version: str
    description: str = ""
    dependencies: list[str] = []
    files: list[str] = []
    checksum: str = ""
    config_files: list[str] = []
    pre_install: str = ""
    post_install: str = ""
    pre_remove: str = ""
    post_remove: str = ""

    def to_json(self) -> str:
        """Serialize with optional empty fields omitted"""
        data = self.model_dump()
        for key in ("config_files", "pre_install", "post_install", "pre_remove", "post_remove"):
            if not data[key]:
                del data[key]
        return json.dumps(data, indent=2)

    def to_record(self, size: int = 0) -> PackageRecord:
        return PackageRecord(
            name=self.name,
            version=self.version,
            description=self.description,
            dependencies=self.dependencies,
            files=self.files,
            checksum=self.checksum,
            size=size,
        )


class SearchResult(BaseModel):
    name: str
    version: str
    description: str = ""
    installed: bool = False


class PackageUpgrade(BaseModel):
    """An installed package with a newer catalog version"""

    name: str
    current_version: str
    new_version: str
