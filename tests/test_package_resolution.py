"""Tests for package resolution functionality"""

import pytest

from mix.errors import CircularDependencyError, NotFoundError
from mix.models import PackageRecord
from mix.package_resolution import (
    DependencySpec,
    PackageResolver,
    compare_versions,
    parse_dependency,
)


def add(store, name, dependencies=(), version="1.0.0"):
    store.upsert(PackageRecord(name=name, version=version, dependencies=list(dependencies)))


def test_resolve_chain(store):
    """Test a linear chain resolves dependencies first"""
    add(store, "level0")
    add(store, "level1", ["level0"])
    add(store, "level2", ["level1"])
    add(store, "level3", ["level2"])

    order = PackageResolver(store).resolve(["level3"])

    assert order == ["level0", "level1", "level2", "level3"]


def test_resolve_diamond(store):
    """Test a shared dependency is listed once, before both dependents"""
    add(store, "libc")
    add(store, "openssl", ["libc"])
    add(store, "zlib", ["libc"])
    add(store, "openssh", ["openssl>=3.0", "zlib"])

    order = PackageResolver(store).resolve(["openssh"])

    assert order == ["libc", "openssl", "zlib", "openssh"]


def test_resolve_multiple_requests(store):
    """Test independent requests keep the discovery order"""
    add(store, "base-files")
    add(store, "iptables", ["base-files"])
    add(store, "htop")

    order = PackageResolver(store).resolve(["htop", "iptables"])

    assert order == ["htop", "base-files", "iptables"]


def test_resolve_cycle(store):
    """Test a dependency cycle is reported with its path"""
    add(store, "a", ["b"])
    add(store, "b", ["a"])

    with pytest.raises(CircularDependencyError) as excinfo:
        PackageResolver(store).resolve(["a"])

    assert excinfo.value.cycle == ["a", "b", "a"]
    assert excinfo.value.code == "CIRCULAR_DEPENDENCY"
    assert "a -> b -> a" in str(excinfo.value)


def test_resolve_self_dependency(store):
    add(store, "loop", ["loop"])

    with pytest.raises(CircularDependencyError):
        PackageResolver(store).resolve(["loop"])


def test_resolve_skips_installed_dependency(store):
    """Test installed dependencies are not part of the plan"""
    add(store, "base")
    add(store, "app", ["base"])
    store.record_install("base", "1.0.0", [])

    assert PackageResolver(store).resolve(["app"]) == ["app"]


def test_resolve_installed_request(store):
    """Test requesting an installed package yields an empty plan"""
    add(store, "base")
    store.record_install("base", "1.0.0", [])

    assert PackageResolver(store).resolve(["base"]) == []


def test_resolve_unknown_package_is_leaf(store):
    """Test packages missing from the catalog are kept as leaves"""
    add(store, "app", ["ghost"])

    assert PackageResolver(store).resolve(["app"]) == ["ghost", "app"]


def test_resolver_is_reusable(store):
    add(store, "a", ["b"])
    add(store, "b")
    resolver = PackageResolver(store)

    assert resolver.resolve(["a"]) == ["b", "a"]
    assert resolver.resolve(["b"]) == ["b"]


def test_missing_dependencies(store):
    add(store, "base")
    add(store, "zlib")
    add(store, "app", ["base", "zlib>=1.2"])
    store.record_install("base", "1.0.0", [])

    assert PackageResolver(store).missing_dependencies("app") == ["zlib"]

    with pytest.raises(NotFoundError):
        PackageResolver(store).missing_dependencies("ghost")


def test_remove_order(store):
    """Test dependents are removed before their dependencies"""
    add(store, "base")
    add(store, "lib", ["base"])
    add(store, "app", ["lib"])
    add(store, "other")
    for name in ("base", "lib", "app", "other"):
        store.record_install(name, "1.0.0", [])

    assert PackageResolver(store).remove_order(["base"]) == ["app", "lib", "base"]
    assert PackageResolver(store).remove_order(["other"]) == ["other"]


@pytest.mark.parametrize(
    "v1,v2,expected",
    [
        ("1.0.0", "1.0.0", 0),
        ("1.0.1", "1.0.0", 1),
        ("1.0.0", "1.0.1", -1),
        ("2.0.0", "1.9.9", 1),
        ("1.10.0", "1.9.0", 1),
        ("1.0", "1.0.0", 0),
        ("1.0.0.1", "1.0.0", 1),
        ("1.2rc1", "1.2", 0),
        ("1.beta", "1.0", 0),
    ],
)
def test_compare_versions(v1, v2, expected):
    assert compare_versions(v1, v2) == expected


def test_compare_versions_antisymmetric():
    assert compare_versions("3.0.1", "3.0") == -compare_versions("3.0", "3.0.1")


@pytest.mark.parametrize(
    "spec,expected",
    [
        ("openssl", DependencySpec("openssl")),
        ("openssl>=3.0", DependencySpec("openssl", ">=", "3.0")),
        ("zlib<=1.3", DependencySpec("zlib", "<=", "1.3")),
        ("libc=2.38", DependencySpec("libc", "=", "2.38")),
        ("foo>1", DependencySpec("foo", ">", "1")),
        ("foo<2", DependencySpec("foo", "<", "2")),
        (" bar >= 1.0 ", DependencySpec("bar", ">=", "1.0")),
    ],
)
def test_parse_dependency(spec, expected):
    assert parse_dependency(spec) == expected


def test_dependency_spec_str():
    assert str(parse_dependency("openssl>=3.0")) == "openssl>=3.0"
    assert str(parse_dependency("openssl")) == "openssl"
