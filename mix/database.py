"""Database module for mix using SQLAlchemy.

This module provides the SQLAlchemy models and the PackageStore holding the
package catalog, the installed ledger and the file ownership table in a
single SQLite file.
"""

import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable, Iterator

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
    or_,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from mix.errors import FileConflictError, NotFoundError
from mix.models import InstalledRecord, PackageRecord, SearchResult
from mix.package_resolution import parse_dependency

log = logging.getLogger("mix.database")

Base = declarative_base()


class Package(Base):
    """Model for a catalog entry."""

    __tablename__ = "packages"

    name = Column(String, primary_key=True)
    version = Column(String, nullable=False)
    description = Column(Text, default="")
    dependencies = Column(JSON, default=list)  # specifiers
    files = Column(JSON, default=list)  # declared paths
    checksum = Column(String, default="")
    size = Column(Integer, default=0)

    def __repr__(self):
        return f"<Package(name={self.name}, version={self.version})>"


class Installed(Base):
    """Model for a ledger entry."""

    __tablename__ = "installed"

    name = Column(String, primary_key=True)
    version = Column(String, nullable=False)
    install_time = Column(DateTime, default=lambda: datetime.now(UTC))
    files = Column(JSON, default=list)  # written paths
    config_files = Column(JSON, default=list)
    pre_remove = Column(Text, default="")
    post_remove = Column(Text, default="")

    def __repr__(self):
        return f"<Installed(name={self.name}, version={self.version})>"


class File(Base):
    """Model for file ownership, one row per installed path."""

    __tablename__ = "files"

    path = Column(String, primary_key=True)
    package = Column(String, ForeignKey("installed.name"), nullable=False, index=True)

    def __repr__(self):
        return f"<File(path={self.path}, package={self.package})>"


def _to_record(package: Package, installed: bool = False) -> PackageRecord:
    return PackageRecord(
        name=package.name,
        version=package.version,
        description=package.description or "",
        dependencies=package.dependencies,
        files=package.files,
        checksum=package.checksum or "",
        size=package.size or 0,
        installed=installed,
    )


class PackageStore:
    """Catalog, ledger and file ownership backed by one SQLite database.

    Multi-row writes run in a single transaction: either every row lands or
    the previous state is kept. A store instance assumes it is the only
    writer of its database file.
    """

    def __init__(self, database_path: Path):
        """Open (and create if needed) the database.

        Args:
            database_path: Path to the SQLite database file
        """
        database_path = Path(database_path)
        database_path.parent.mkdir(parents=True, exist_ok=True)

        self._engine = create_engine(
            f"sqlite:///{database_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        event.listen(self._engine, "connect", _set_sqlite_pragma)

        Base.metadata.create_all(self._engine)

        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self._engine
        )

        log.info(f"Database initialized at {database_path}")

    def close(self) -> None:
        """Close database connections."""
        self._engine.dispose()
        log.debug("Database connections closed")

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session committed on success and rolled back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # Catalog

    def upsert(self, record: PackageRecord) -> None:
        """Insert or replace a catalog record by name."""
        self.upsert_many([record])

    def upsert_many(self, records: Iterable[PackageRecord]) -> int:
        """Insert or replace several catalog records in one transaction.

        Returns:
            Number of records written
        """
        count = 0
        with self._session() as session:
            for record in records:
                session.merge(
                    Package(
                        name=record.name,
                        version=record.version,
                        description=record.description,
                        dependencies=record.dependencies,
                        files=record.files,
                        checksum=record.checksum,
                        size=record.size,
                    )
                )
                count += 1
        return count

    def get(self, name: str) -> PackageRecord:
        """Get a catalog record.

        Raises:
            NotFoundError: name is not in the catalog
        """
        with self._session() as session:
            package = session.get(Package, name)
            if package is None:
                raise NotFoundError(f"package {name} not found")
            return _to_record(package, installed=session.get(Installed, name) is not None)

    def dependencies(self, name: str) -> list[str]:
        """Dependency specifiers of a catalog record.

        Raises:
            NotFoundError: name is not in the catalog
        """
        with self._session() as session:
            package = session.get(Package, name)
            if package is None:
                raise NotFoundError(f"package {name} not found")
            return package.dependencies

    def list_available(self) -> list[PackageRecord]:
        """Catalog joined with the ledger for the installed flag, by name."""
        with self._session() as session:
            rows = (
                session.query(Package, Installed.name)
                .outerjoin(Installed, Package.name == Installed.name)
                .order_by(Package.name)
                .all()
            )
            return [_to_record(package, installed=bool(i)) for package, i in rows]

    # Ledger

    def is_installed(self, name: str) -> bool:
        with self._session() as session:
            return session.get(Installed, name) is not None

    def installed_names(self) -> set[str]:
        with self._session() as session:
            return {name for (name,) in session.query(Installed.name)}

    def get_installed(self, name: str) -> InstalledRecord:
        """Get a ledger entry.

        Raises:
            NotFoundError: name is not installed
        """
        with self._session() as session:
            installed = session.get(Installed, name)
            if installed is None:
                raise NotFoundError(f"package {name} is not installed")
            return InstalledRecord(
                name=installed.name,
                version=installed.version,
                install_time=installed.install_time,
                files=installed.files,
                config_files=installed.config_files,
                pre_remove=installed.pre_remove or "",
                post_remove=installed.post_remove or "",
            )

    def installed_files(self, name: str) -> list[str]:
        return self.get_installed(name).files

    def list_installed(self) -> list[PackageRecord]:
        """Ledger joined with the catalog for descriptions, by name."""
        with self._session() as session:
            rows = (
                session.query(Installed, Package)
                .outerjoin(Package, Installed.name == Package.name)
                .order_by(Installed.name)
                .all()
            )
            return [
                PackageRecord(
                    name=installed.name,
                    version=installed.version,
                    description=package.description if package else "",
                    dependencies=package.dependencies if package else [],
                    files=installed.files,
                    checksum=package.checksum if package else "",
                    size=package.size if package else 0,
                    installed=True,
                )
                for installed, package in rows
            ]

    def record_install(
        self,
        name: str,
        version: str,
        files: list[str],
        config_files: Iterable[str] = (),
        pre_remove: str = "",
        post_remove: str = "",
    ) -> None:
        """Replace the ledger entry of a package and claim its files.

        Runs in one transaction: the ledger row, the removal of the previous
        ownership rows and one ownership row per path either all land or
        none do.

        Raises:
            FileConflictError: a path is owned by another installed package
        """
        files = list(dict.fromkeys(files))
        with self._session() as session:
            session.merge(
                Installed(
                    name=name,
                    version=version,
                    install_time=datetime.now(UTC),
                    files=files,
                    config_files=list(config_files),
                    pre_remove=pre_remove,
                    post_remove=post_remove,
                )
            )
            # Ownership rows reference the ledger row
            session.flush()
            session.query(File).filter(File.package == name).delete()

            conflicts = {}
            for path in files:
                owner = session.get(File, path)
                if owner is not None:
                    conflicts[path] = owner.package
                else:
                    session.add(File(path=path, package=name))
            if conflicts:
                raise FileConflictError(name, conflicts)

        log.info(f"Recorded installation of {name} {version} ({len(files)} files)")

    def remove_install(self, name: str) -> None:
        """Drop the ledger entry of a package and all files it owns."""
        with self._session() as session:
            session.query(File).filter(File.package == name).delete()
            session.query(Installed).filter(Installed.name == name).delete()

        log.info(f"Removed {name} from the ledger")

    def file_owners(self, paths: Iterable[str]) -> dict[str, str]:
        """Map the given paths to their owning package, if any."""
        owners = {}
        with self._session() as session:
            for path in paths:
                row = session.get(File, path)
                if row is not None:
                    owners[path] = row.package
        return owners

    # Queries

    def search(self, query: str, installed_only: bool = False) -> list[SearchResult]:
        """Case-insensitive substring search on name or description."""
        query = query.lower()
        with self._session() as session:
            if installed_only:
                description = func.coalesce(Package.description, "")
                rows = (
                    session.query(Installed.name, Installed.version, description, Installed.name)
                    .outerjoin(Package, Installed.name == Package.name)
                    .filter(
                        or_(
                            func.lower(Installed.name).contains(query, autoescape=True),
                            func.lower(description).contains(query, autoescape=True),
                        )
                    )
                    .order_by(Installed.name)
                    .all()
                )
            else:
                description = func.coalesce(Package.description, "")
                rows = (
                    session.query(Package.name, Package.version, description, Installed.name)
                    .outerjoin(Installed, Package.name == Installed.name)
                    .filter(
                        or_(
                            func.lower(Package.name).contains(query, autoescape=True),
                            func.lower(description).contains(query, autoescape=True),
                        )
                    )
                    .order_by(Package.name)
                    .all()
                )
            return [
                SearchResult(
                    name=name,
                    version=version,
                    description=desc,
                    installed=installed is not None,
                )
                for name, version, desc, installed in rows
            ]

    def reverse_dependencies(self, name: str) -> list[str]:
        """Installed packages whose catalog entry depends on ``name``."""
        with self._session() as session:
            rows = (
                session.query(Installed.name, Package.dependencies)
                .join(Package, Installed.name == Package.name)
                .order_by(Installed.name)
                .all()
            )

        result = []
        for package_name, dependencies in rows:
            if any(parse_dependency(dep).name == name for dep in dependencies):
                result.append(package_name)
        return result


def _set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL and foreign keys on every new connection."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


