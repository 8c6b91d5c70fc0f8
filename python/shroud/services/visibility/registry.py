"""Publishes entity graph snapshots and hands out versioned views.

A catalog sync builds a new ``EntityGraphView`` and publishes it here. The
registry bumps the current version, notifies subscribers and keeps older
versions alive only while an in-flight computation still holds a lease on
them.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from shroud.errors import SnapshotUnavailableError
from shroud.logging import get_logger
from shroud.services.visibility.graph import EntityGraphView
from shroud.services.visibility.types import EntityKind

logger = get_logger(__name__)

SyncListener = Callable[[int | None, int, frozenset[EntityKind]], None]


class GraphRegistry:
    """Thread-safe holder of the current and leased graph snapshots."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # Serialises build-and-publish so concurrent syncs get distinct versions.
        self._publish_lock = threading.Lock()
        self._views: dict[int, EntityGraphView] = {}
        self._leases: Counter[int] = Counter()
        self._current: int | None = None
        self._listeners: list[SyncListener] = []

    @property
    def current_version(self) -> int | None:
        return self._current

    def next_version(self) -> int:
        return (self._current or 0) + 1

    def subscribe(self, listener: SyncListener) -> None:
        """Register a callback invoked as ``listener(old, new, changed_kinds)``."""
        with self._lock:
            self._listeners.append(listener)

    def publish(
        self,
        graph: EntityGraphView,
        changed_kinds: set[EntityKind] | frozenset[EntityKind] | None = None,
    ) -> int:
        """Make ``graph`` the current snapshot and notify subscribers.

        When ``changed_kinds`` is not given it is derived by diffing against
        the previous snapshot.

        Raises:
            ValueError: If the graph's version does not advance the current one.
        """
        with self._lock:
            old_version = self._current
            if old_version is not None and graph.version <= old_version:
                raise ValueError(
                    f"graph version {graph.version} does not advance current version {old_version}"
                )
            previous = self._views.get(old_version) if old_version is not None else None
            if changed_kinds is None:
                changed = frozenset(graph.changed_kinds(previous))
            else:
                changed = frozenset(EntityKind(kind) for kind in changed_kinds)
            self._views[graph.version] = graph
            self._current = graph.version
            self._prune_locked()
            listeners = list(self._listeners)

        logger.info(
            "graph_version_published",
            old_version=old_version,
            new_version=graph.version,
            changed_kinds=sorted(kind.value for kind in changed),
        )
        for listener in listeners:
            listener(old_version, graph.version, changed)
        return graph.version

    def publish_next(
        self,
        build: Callable[[int], EntityGraphView],
        changed_kinds: set[EntityKind] | frozenset[EntityKind] | None = None,
    ) -> int:
        """Build the snapshot for the next version with ``build`` and publish it.

        Concurrent callers run one at a time, each against the version after
        the one the previous caller published.
        """
        with self._publish_lock:
            return self.publish(build(self.next_version()), changed_kinds)

    def get_view(self, version: int | None = None) -> tuple[EntityGraphView, int]:
        """Return ``(graph, version)`` for ``version`` or the current snapshot.

        Raises:
            SnapshotUnavailableError: If nothing is published or the version
                has been released.
        """
        with self._lock:
            target = self._current if version is None else version
            if target is None:
                raise SnapshotUnavailableError()
            graph = self._views.get(target)
        if graph is None:
            raise SnapshotUnavailableError(target)
        return graph, target

    @contextmanager
    def lease(self, version: int | None = None) -> Iterator[EntityGraphView]:
        """Hold a snapshot alive for the duration of a computation."""
        with self._lock:
            target = self._current if version is None else version
            if target is None:
                raise SnapshotUnavailableError()
            graph = self._views.get(target)
            if graph is None:
                raise SnapshotUnavailableError(target)
            self._leases[target] += 1
        try:
            yield graph
        finally:
            with self._lock:
                self._leases[target] -= 1
                if self._leases[target] <= 0:
                    del self._leases[target]
                self._prune_locked()

    def retained_versions(self) -> list[int]:
        with self._lock:
            return sorted(self._views)

    def _prune_locked(self) -> None:
        for version in list(self._views):
            if version != self._current and not self._leases.get(version):
                del self._views[version]
