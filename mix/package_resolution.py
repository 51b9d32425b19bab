"""
Package resolution logic

This module handles:
- Parsing dependency specifiers such as ``openssl>=3.0``
- Comparing dotted numeric versions
- Ordering install plans so dependencies come first
- Ordering removals so dependents go first
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from mix.errors import CircularDependencyError, NotFoundError

if TYPE_CHECKING:
    from mix.database import PackageStore

log = logging.getLogger("mix.resolver")

# Order matters: two-character operators must be tried first
OPERATORS = (">=", "<=", "=", ">", "<")

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class DependencySpec:
    """A parsed dependency specifier"""

    name: str
    operator: Optional[str] = None
    version: Optional[str] = None

    def __str__(self):
        if self.operator:
            return f"{self.name}{self.operator}{self.version}"
        return self.name


def parse_dependency(spec: str) -> DependencySpec:
    """Split a dependency specifier into name, operator and version.

    The first operator of OPERATORS found in the specifier wins, so
    ``pkg>=1.0`` yields ``(pkg, >=, 1.0)`` and never ``(pkg>, =, 1.0)``.

    Args:
        spec: Specifier like ``pkg``, ``pkg>=1.0`` or ``pkg = 2``

    Returns:
        The parsed DependencySpec
    """
    spec = spec.strip()
    for operator in OPERATORS:
        index = spec.find(operator)
        if index != -1:
            return DependencySpec(
                name=spec[:index].strip(),
                operator=operator,
                version=spec[index + len(operator):].strip(),
            )
    return DependencySpec(name=spec)


def _segment(value: str) -> int:
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else 0


def compare_versions(v1: str, v2: str) -> int:
    """Compare two dotted versions segment by segment, numerically.

    Non-numeric segments count as their leading integer (or 0), missing
    trailing segments as 0, so ``1.0`` equals ``1.0.0`` and ``1.10.0`` is
    newer than ``1.9.0``.

    Returns:
        -1, 0 or 1 as v1 is older than, equal to or newer than v2
    """
    parts1 = v1.split(".")
    parts2 = v2.split(".")

    for i in range(max(len(parts1), len(parts2))):
        n1 = _segment(parts1[i]) if i < len(parts1) else 0
        n2 = _segment(parts2[i]) if i < len(parts2) else 0
        if n1 < n2:
            return -1
        if n1 > n2:
            return 1
    return 0


class NodeState(Enum):
    UNVISITED = "unvisited"
    VISITING = "visiting"
    RESOLVED = "resolved"


class PackageResolver:
    """Resolves install and removal orders against the package store"""

    def __init__(self, store: "PackageStore"):
        self.store = store
        self._reset()

    def _reset(self):
        # Arena: one index per package name, states stored by index
        self._index: dict[str, int] = {}
        self._names: list[str] = []
        self._states: list[NodeState] = []
        self._stack: list[int] = []
        self._order: list[str] = []
        self._installed: set[str] = set()

    def _node(self, name: str) -> int:
        if name not in self._index:
            self._index[name] = len(self._names)
            self._names.append(name)
            self._states.append(NodeState.UNVISITED)
        return self._index[name]

    def resolve(self, packages: list[str]) -> list[str]:
        """
        Compute the installation order for the requested packages.

        Dependencies always precede their dependents. Among independent
        subtrees the order follows the depth-first discovery order.
        Packages that are already installed influence the walk but are not
        part of the result.

        Args:
            packages: Requested package names

        Returns:
            Names to install, dependencies first

        Raises:
            CircularDependencyError: the dependency graph has a cycle
        """
        self._reset()
        self._installed = self.store.installed_names()

        for name in packages:
            if name in self._installed:
                self._states[self._node(name)] = NodeState.RESOLVED

        for name in packages:
            if self._states[self._node(name)] is NodeState.RESOLVED:
                continue
            self._visit(name)

        return [name for name in self._order if name not in self._installed]

    def _visit(self, name: str):
        node = self._node(name)
        state = self._states[node]

        if state is NodeState.VISITING:
            start = self._stack.index(node)
            cycle = [self._names[i] for i in self._stack[start:]] + [name]
            raise CircularDependencyError(cycle)
        if state is NodeState.RESOLVED:
            return

        self._states[node] = NodeState.VISITING
        self._stack.append(node)

        try:
            dependencies = self.store.dependencies(name)
        except NotFoundError:
            # Unknown packages are accepted as leaves
            log.warning(f"Package {name} not in catalog, treating it as having no dependencies")
            dependencies = []

        for spec in dependencies:
            dependency = parse_dependency(spec).name
            if not dependency:
                continue
            if dependency in self._installed:
                self._states[self._node(dependency)] = NodeState.RESOLVED
                continue
            self._visit(dependency)

        self._stack.pop()
        self._states[node] = NodeState.RESOLVED
        self._order.append(name)

    def missing_dependencies(self, name: str) -> list[str]:
        """Names of dependencies of ``name`` that are not installed.

        Raises:
            NotFoundError: name is not in the catalog
        """
        installed = self.store.installed_names()
        missing = []
        for spec in self.store.dependencies(name):
            dependency = parse_dependency(spec).name
            if dependency not in installed:
                missing.append(dependency)
        return missing

    def remove_order(self, packages: list[str]) -> list[str]:
        """
        Compute the removal order for the given packages.

        Every installed package depending on a target is removed before the
        target itself, transitively.

        Args:
            packages: Names to remove

        Returns:
            Names to remove, dependents first
        """
        order: list[str] = []
        visited: set[str] = set()

        def visit(name: str):
            if name in visited:
                return
            visited.add(name)
            for dependent in self.store.reverse_dependencies(name):
                visit(dependent)
            order.append(name)

        for name in packages:
            visit(name)
        return order
