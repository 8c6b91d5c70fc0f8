"""In-memory arena of computed exclusion sets keyed by (user, graph version).

Writes are compare-and-swap on version: a result computed against an older
graph than what is cached (or than the registry's current version) is
discarded, never served.
"""

from __future__ import annotations

import threading

from shroud.logging import get_logger
from shroud.services.visibility.state import ExclusionSet
from shroud.services.visibility.types import EntityKind, EntityRef

logger = get_logger(__name__)


class ExclusionCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[int, int], ExclusionSet] = {}
        self._latest: dict[int, int] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, user_id: int, version: int) -> ExclusionSet | None:
        with self._lock:
            return self._entries.get((user_id, version))

    def latest(self, user_id: int) -> ExclusionSet | None:
        with self._lock:
            version = self._latest.get(user_id)
            if version is None:
                return None
            return self._entries.get((user_id, version))

    def users(self) -> list[int]:
        with self._lock:
            return sorted(self._latest)

    def entries(self) -> list[ExclusionSet]:
        """Latest entry for every cached user."""
        with self._lock:
            return [self._entries[(user_id, v)] for user_id, v in sorted(self._latest.items())]

    def store(self, exclusions: ExclusionSet, current_version: int | None = None) -> bool:
        """Install ``exclusions`` unless something newer exists.

        Returns:
            True if stored; False if discarded as stale.
        """
        user_id, version = exclusions.user_id, exclusions.version
        with self._lock:
            cached = self._latest.get(user_id)
            newest = max(v for v in (cached, current_version, version) if v is not None)
            if version < newest:
                stored = False
            else:
                for key in [k for k in self._entries if k[0] == user_id and k[1] != version]:
                    del self._entries[key]
                self._entries[(user_id, version)] = exclusions
                self._latest[user_id] = version
                stored = True

        if not stored:
            logger.debug(
                "stale_version_discarded",
                user_id=user_id,
                version=version,
                cached_version=cached,
                current_version=current_version,
            )
        return stored

    def replace(self, expected: ExclusionSet, updated: ExclusionSet) -> bool:
        """Swap ``expected`` for ``updated`` if ``expected`` is still the cached entry."""
        if updated.user_id != expected.user_id or updated.version != expected.version:
            return False
        key = (expected.user_id, expected.version)
        with self._lock:
            if self._entries.get(key) is not expected:
                return False
            self._entries[key] = updated
            return True

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == user_id]:
                del self._entries[key]
            self._latest.pop(user_id, None)

    def evict_before(self, version: int) -> int:
        """Drop every entry computed against a version older than ``version``."""
        with self._lock:
            stale = [key for key in self._entries if key[1] < version]
            for key in stale:
                del self._entries[key]
                if self._latest.get(key[0]) == key[1]:
                    del self._latest[key[0]]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._latest.clear()

    # -------------------------------------------------------------------------
    # Point and batch lookups (None when no entry exists for the version)
    # -------------------------------------------------------------------------

    def is_visible(
        self, user_id: int, version: int, kind: EntityKind, entity_id: str
    ) -> bool | None:
        entry = self.get(user_id, version)
        if entry is None:
            return None
        return entry.graph.contains(kind, entity_id) and not entry.is_excluded(
            EntityRef(kind, entity_id)
        )

    def excluded_ids(self, user_id: int, version: int, kind: EntityKind) -> frozenset[str] | None:
        entry = self.get(user_id, version)
        if entry is None:
            return None
        return entry.excluded_ids(kind)

    def visible_count(self, user_id: int, version: int, kind: EntityKind) -> int | None:
        entry = self.get(user_id, version)
        if entry is None:
            return None
        return entry.visible_count(kind)
