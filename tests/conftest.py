from pathlib import Path

import pytest

from mix import archive
from mix.config import Settings
from mix.database import PackageStore
from mix.manager import Manager
from mix.models import PackageMetadata
from mix.scripts import ScriptResult


def pytest_addoption(parser):
    parser.addoption(
        "--runslow", action="store_true", default=False, help="run slow tests"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        # --runslow given in cli: do not skip slow tests
        return
    skip_slow = pytest.mark.skip(reason="need --runslow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def test_path(tmp_path):
    yield tmp_path


@pytest.fixture
def settings(test_path):
    return Settings(
        database_path=test_path / "db" / "packages.db",
        repo_url="http://127.0.0.1:8123/packages",
        cache_dir=test_path / "cache",
        root_dir=test_path / "root",
        http_timeout=5.0,
    )


@pytest.fixture
def store(settings):
    store = PackageStore(settings.database_path)
    yield store
    store.close()


class FakeScriptRunner:
    """Records scripts instead of running them"""

    def __init__(self):
        self.scripts = []
        self.returncodes = {}

    def fail(self, stage: str, returncode: int = 1):
        self.returncodes[stage] = returncode

    def run(self, script):
        self.scripts.append(script)
        return ScriptResult(returncode=self.returncodes.get(script.stage.value, 0))

    @property
    def stages(self):
        return [script.stage.value for script in self.scripts]


@pytest.fixture
def runner():
    return FakeScriptRunner()


@pytest.fixture
def manager(settings, store, runner):
    settings.cache_dir.mkdir(parents=True, exist_ok=True)
    settings.root_dir.mkdir(parents=True, exist_ok=True)
    manager = Manager(settings, store=store, runner=runner)
    yield manager
    manager.http.close()


@pytest.fixture
def build_package(test_path):
    """Factory writing a .mixpkg archive from a files mapping.

    ``files`` maps absolute install paths to their content.
    """

    def _build(
        name,
        version="1.0.0",
        files=None,
        output_dir=None,
        **fields,
    ) -> Path:
        files = files if files is not None else {f"/usr/share/{name}/README": f"{name}\n"}
        source_dir = test_path / "src" / f"{name}-{version}"
        for path, content in files.items():
            target = source_dir / "files" / path.lstrip("/")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)

        metadata = PackageMetadata(
            name=name, version=version, files=sorted(files), **fields
        )
        output_dir = output_dir or test_path / "cache"
        return archive.create_package(
            source_dir, output_dir / f"{name}-{version}.mixpkg", metadata
        )

    return _build


@pytest.fixture
def add_package(build_package, store):
    """Factory building a cached archive and adding its catalog record"""

    def _add(name, version="1.0.0", files=None, with_checksum=True, **fields):
        path = build_package(name, version, files, **fields)
        record = archive.read_metadata(path).to_record(size=path.stat().st_size)
        if with_checksum:
            record.checksum = archive.sha256_file(path)
        store.upsert(record)
        return path

    return _add


@pytest.fixture(scope="session")
def httpserver_listen_address():
    return ("127.0.0.1", 8123)
