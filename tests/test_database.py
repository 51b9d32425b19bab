"""Tests for the SQLAlchemy package store"""

import pytest

from mix.database import Package, PackageStore
from mix.errors import FileConflictError, NotFoundError
from mix.models import PackageRecord


def record(name, version="1.0.0", **fields):
    return PackageRecord(name=name, version=version, **fields)


def test_upsert_and_get(store):
    store.upsert(record("test-package", description="A test package", size=42))

    package = store.get("test-package")

    assert package.name == "test-package"
    assert package.description == "A test package"
    assert package.size == 42
    assert package.installed is False


def test_upsert_replaces_by_name(store):
    store.upsert(record("demo", "1.0.0"))
    store.upsert(record("demo", "2.0.0", dependencies=["base"]))

    assert store.get("demo").version == "2.0.0"
    assert store.dependencies("demo") == ["base"]
    assert len(store.list_available()) == 1


def test_upsert_many(store):
    count = store.upsert_many([record("a"), record("b"), record("c")])

    assert count == 3
    assert [p.name for p in store.list_available()] == ["a", "b", "c"]


def test_get_unknown(store):
    with pytest.raises(NotFoundError):
        store.get("ghost")
    with pytest.raises(NotFoundError):
        store.dependencies("ghost")
    with pytest.raises(NotFoundError):
        store.get_installed("ghost")


def test_search(store):
    """Test substring search on a catalog with a single package"""
    store.upsert(record("test-package", description="Package for tests"))

    results = store.search("test", False)

    assert len(results) == 1
    assert results[0].name == "test-package"
    assert results[0].installed is False


def test_search_is_case_insensitive_and_matches_description(store):
    store.upsert(record("openssh", description="Secure SHELL client"))
    store.upsert(record("htop", description="Process viewer"))

    assert [r.name for r in store.search("shell")] == ["openssh"]
    assert [r.name for r in store.search("SSH")] == ["openssh"]
    assert store.search("nothing") == []


def test_search_escapes_wildcards(store):
    store.upsert(record("demo", description="100 percent"))

    assert store.search("%") == []
    assert store.search("_") == []


def test_search_installed_only(store):
    store.upsert(record("test-one"))
    store.upsert(record("test-two"))
    store.record_install("test-two", "1.0.0", [])

    results = store.search("test", installed_only=True)

    assert [r.name for r in results] == ["test-two"]
    assert results[0].installed is True
    assert [r.installed for r in store.search("test")] == [False, True]


def test_record_install(store):
    store.upsert(record("demo"))
    store.record_install(
        "demo",
        "1.0.0",
        ["/usr/bin/demo", "/etc/demo.conf"],
        config_files=["/etc/demo.conf"],
        post_remove="echo bye",
    )

    installed = store.get_installed("demo")

    assert store.is_installed("demo")
    assert installed.files == ["/usr/bin/demo", "/etc/demo.conf"]
    assert installed.config_files == ["/etc/demo.conf"]
    assert installed.post_remove == "echo bye"
    assert installed.install_time is not None
    assert store.file_owners(["/usr/bin/demo", "/nope"]) == {"/usr/bin/demo": "demo"}
    assert store.get("demo").installed is True


def test_record_install_replaces_files(store):
    store.record_install("demo", "1.0.0", ["/a", "/b"])
    store.record_install("demo", "1.1.0", ["/b", "/c"])

    assert store.installed_files("demo") == ["/b", "/c"]
    assert store.file_owners(["/a", "/b", "/c"]) == {"/b": "demo", "/c": "demo"}


def test_record_install_conflict_is_atomic(store):
    """Test a conflicting path leaves no trace of the failed install"""
    store.record_install("first", "1.0.0", ["/usr/bin/shared"])

    with pytest.raises(FileConflictError) as excinfo:
        store.record_install("second", "1.0.0", ["/usr/bin/own", "/usr/bin/shared"])

    assert excinfo.value.conflicts == {"/usr/bin/shared": "first"}
    assert not store.is_installed("second")
    assert store.file_owners(["/usr/bin/own", "/usr/bin/shared"]) == {
        "/usr/bin/shared": "first"
    }


def test_remove_install(store):
    store.record_install("demo", "1.0.0", ["/usr/bin/demo"])

    store.remove_install("demo")

    assert not store.is_installed("demo")
    assert store.file_owners(["/usr/bin/demo"]) == {}
    assert store.installed_names() == set()


def test_list_installed_joins_catalog(store):
    store.upsert(record("demo", description="Demo package", size=10))
    store.record_install("demo", "0.9.0", ["/usr/bin/demo"])
    store.record_install("orphan", "1.0.0", [])

    packages = store.list_installed()

    assert [p.name for p in packages] == ["demo", "orphan"]
    assert packages[0].version == "0.9.0"
    assert packages[0].description == "Demo package"
    assert packages[0].files == ["/usr/bin/demo"]
    assert packages[1].description == ""
    assert all(p.installed for p in packages)


def test_list_available_installed_flag(store):
    store.upsert(record("a"))
    store.upsert(record("b"))
    store.record_install("b", "1.0.0", [])

    assert [(p.name, p.installed) for p in store.list_available()] == [
        ("a", False),
        ("b", True),
    ]


def test_reverse_dependencies(store):
    store.upsert(record("base"))
    store.upsert(record("app", dependencies=["base>=1.0"]))
    store.upsert(record("tool", dependencies=["base"]))
    store.upsert(record("unrelated", dependencies=["basement"]))
    for name in ("base", "app", "unrelated"):
        store.record_install(name, "1.0.0", [])

    # tool depends on base but is not installed
    assert store.reverse_dependencies("base") == ["app"]


def test_store_persists(settings):
    store = PackageStore(settings.database_path)
    store.upsert(record("demo"))
    store.close()

    reopened = PackageStore(settings.database_path)
    assert reopened.get("demo").version == "1.0.0"
    reopened.close()


def test_record_name_pattern():
    with pytest.raises(ValueError):
        PackageRecord(name="Bad Name", version="1.0")


def test_list_columns_round_trip(store):
    """Test list columns come back from the database as lists"""
    store.upsert(record("demo", dependencies=["base>=1.0"], files=["/usr/bin/demo"]))
    store.record_install("demo", "1.0.0", ["/usr/bin/demo"], config_files=[])

    with store._session() as session:
        package = session.get(Package, "demo")
        assert package.dependencies == ["base>=1.0"]
        assert package.files == ["/usr/bin/demo"]

    installed = store.get_installed("demo")
    assert installed.files == ["/usr/bin/demo"]
    assert installed.config_files == []
