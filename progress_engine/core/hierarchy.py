"""
Content Hierarchy Snapshot.

Read-only index of the course -> lesson -> section structure, its ordering
and its prerequisite edges. The hierarchy is owned by an external content
provider; the engine only ever holds immutable snapshots of it.

Snapshots are shared across worker threads without locking. A refresh builds
a new snapshot and swaps the holder's reference; workers that already took
the old reference keep using it until their event finishes.
"""
from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Protocol

from loguru import logger

from progress_engine.core.errors import HierarchyError, ValidationError
from progress_engine.core.models import ContentUnit, UnitKind


class ContentHierarchyProvider(Protocol):
    """External collaborator that owns the content hierarchy."""

    def get_unit(self, unit_id: str) -> ContentUnit | None:
        ...

    def get_children(self, unit_id: str) -> list[ContentUnit]:
        ...


class StaticHierarchyProvider:
    """Provider backed by a fixed list of units (fixtures, CLI files)."""

    def __init__(self, units: Iterable[ContentUnit]):
        self._units = {unit.unit_id: unit for unit in units}

    def get_unit(self, unit_id: str) -> ContentUnit | None:
        return self._units.get(unit_id)

    def get_children(self, unit_id: str) -> list[ContentUnit]:
        unit = self._units.get(unit_id)
        if unit is None:
            return []
        return [self._units[c] for c in unit.children if c in self._units]

    def root_ids(self) -> list[str]:
        """Courses, in insertion order."""
        return [u.unit_id for u in self._units.values() if u.kind == UnitKind.COURSE]


class UnitHierarchy:
    """
    Immutable snapshot of the content hierarchy.

    Validates on construction:
    - every child id exists and has the kind its parent expects
    - every unit has at most one parent
    - prerequisite ids exist and no unit requires itself (directly or transitively)
    """

    def __init__(self, units: Iterable[ContentUnit], version: int = 1):
        self._version = version
        self._units: Mapping[str, ContentUnit] = MappingProxyType(
            {unit.unit_id: unit for unit in units}
        )
        parents: dict[str, str] = {}
        objectives: dict[str, str] = {}

        for unit in self._units.values():
            expected = unit.kind.child_kind
            for child_id in unit.children:
                child = self._units.get(child_id)
                if child is None:
                    raise HierarchyError(f"{unit.unit_id} lists unknown child {child_id}")
                if expected is None or child.kind != expected:
                    raise HierarchyError(
                        f"{unit.kind.value} {unit.unit_id} cannot contain "
                        f"{child.kind.value} {child_id}"
                    )
                if child_id in parents:
                    raise HierarchyError(
                        f"{child_id} has two parents: {parents[child_id]} and {unit.unit_id}"
                    )
                parents[child_id] = unit.unit_id
            for prereq in unit.prerequisites:
                if prereq not in self._units:
                    raise HierarchyError(f"{unit.unit_id} requires unknown unit {prereq}")
            for objective_id in unit.objective_ids:
                # First binding wins; objectives are normally bound once
                objectives.setdefault(objective_id, unit.unit_id)

        self._parents: Mapping[str, str] = MappingProxyType(parents)
        self._objectives: Mapping[str, str] = MappingProxyType(objectives)
        self._check_prerequisite_cycles()

    @classmethod
    def from_provider(
        cls,
        provider: ContentHierarchyProvider,
        root_ids: Iterable[str],
        version: int = 1,
    ) -> UnitHierarchy:
        """
        Build a snapshot by walking the provider from the given roots.

        Args:
            provider: Content hierarchy provider
            root_ids: Course ids to start from
            version: Snapshot version number

        Returns:
            UnitHierarchy containing every reachable unit and prerequisite
        """
        collected: dict[str, ContentUnit] = {}
        pending = list(root_ids)
        while pending:
            unit_id = pending.pop()
            if unit_id in collected:
                continue
            unit = provider.get_unit(unit_id)
            if unit is None:
                raise HierarchyError(f"Provider has no unit {unit_id}")
            collected[unit_id] = unit
            pending.extend(child.unit_id for child in provider.get_children(unit_id))
            pending.extend(unit.prerequisites)
        logger.debug(f"Loaded hierarchy v{version} with {len(collected)} units")
        return cls(collected.values(), version=version)

    def _check_prerequisite_cycles(self) -> None:
        # Colour-marking DFS over prerequisite edges
        state: dict[str, int] = {}

        def visit(unit_id: str, trail: list[str]) -> None:
            mark = state.get(unit_id)
            if mark == 2:
                return
            if mark == 1:
                cycle = " -> ".join(trail[trail.index(unit_id):] + [unit_id])
                raise HierarchyError(f"Prerequisite cycle: {cycle}")
            state[unit_id] = 1
            trail.append(unit_id)
            for prereq in self.required_prerequisites(unit_id):
                visit(prereq, trail)
            trail.pop()
            state[unit_id] = 2

        for unit_id in self._units:
            visit(unit_id, [])

    # ========================================
    # Queries
    # ========================================

    @property
    def version(self) -> int:
        return self._version

    def with_version(self, version: int) -> UnitHierarchy:
        """Same units under another version number; the original is untouched."""
        renumbered = copy.copy(self)
        renumbered._version = version
        return renumbered

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def units(self) -> list[ContentUnit]:
        return list(self._units.values())

    def get(self, unit_id: str) -> ContentUnit:
        """Return a unit or raise ValidationError for unknown ids."""
        unit = self._units.get(unit_id)
        if unit is None:
            raise ValidationError(f"Unknown unit id: {unit_id}")
        return unit

    def children(self, unit_id: str) -> list[ContentUnit]:
        return [self._units[c] for c in self.get(unit_id).children]

    def parent(self, unit_id: str) -> ContentUnit | None:
        parent_id = self._parents.get(unit_id)
        return self._units[parent_id] if parent_id else None

    def ancestors(self, unit_id: str) -> list[ContentUnit]:
        """Parents from nearest (lesson) to furthest (course)."""
        chain = []
        parent = self.parent(unit_id)
        while parent is not None:
            chain.append(parent)
            parent = self.parent(parent.unit_id)
        return chain

    def lesson_of(self, unit_id: str) -> ContentUnit | None:
        for unit in [self.get(unit_id), *self.ancestors(unit_id)]:
            if unit.kind == UnitKind.LESSON:
                return unit
        return None

    def required_prerequisites(self, unit_id: str) -> list[str]:
        """
        Prerequisites gating work on a unit.

        A section inherits the prerequisites of its lesson and course, so the
        result is the union over the unit and its ancestors, nearest first.
        """
        seen: list[str] = []
        for unit in [self.get(unit_id), *self.ancestors(unit_id)]:
            for prereq in unit.prerequisites:
                if prereq not in seen:
                    seen.append(prereq)
        return seen

    def unit_for_objective(self, objective_id: str) -> ContentUnit | None:
        unit_id = self._objectives.get(objective_id)
        return self._units[unit_id] if unit_id else None

    def sections(self) -> list[ContentUnit]:
        return [u for u in self._units.values() if u.kind == UnitKind.SECTION]


class HierarchyHolder:
    """Copy-on-write holder for the current hierarchy snapshot."""

    def __init__(self, snapshot: UnitHierarchy):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @property
    def current(self) -> UnitHierarchy:
        return self._snapshot

    def refresh(self, snapshot: UnitHierarchy) -> UnitHierarchy:
        """
        Swap in a new snapshot.

        Returns:
            The snapshot that was replaced
        """
        with self._lock:
            previous = self._snapshot
            if snapshot.version <= previous.version:
                snapshot = snapshot.with_version(previous.version + 1)
            self._snapshot = snapshot
        logger.info(
            f"Hierarchy refreshed: v{previous.version} -> v{snapshot.version} "
            f"({len(snapshot)} units)"
        )
        return previous
