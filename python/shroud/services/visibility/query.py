"""Visibility query façade, invalidation hooks and the recompute worker pool.

Every browsing surface asks this service whether an entity is visible, for
the excluded id set of a kind, or for a visible count. Answers are served
from the exclusion cache at the registry's current version. A missing or
stale entry triggers a recompute and a bounded wait; if that fails or times
out the answer is fail-closed (nothing visible).
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from functools import partial

from shroud.errors import (
    ContentUnavailableError,
    ExclusionError,
    InconsistentExclusionStateError,
    SnapshotUnavailableError,
    StaleVersionDiscarded,
)
from shroud.logging import get_logger
from shroud.services.visibility.cache import ExclusionCache
from shroud.services.visibility.computer import DEFAULT_RETRY_DELAYS_S, ExclusionComputer
from shroud.services.visibility.registry import GraphRegistry
from shroud.services.visibility.state import ExclusionSet
from shroud.services.visibility.types import (
    EntityKind,
    EntityRef,
    ExclusionReason,
    RestrictionRule,
    RuleStore,
)

logger = get_logger(__name__)

# A recompute whose result is superseded by a newer graph is retried this many times.
_STALE_RECOMPUTE_ATTEMPTS = 2


@dataclass
class RecomputeAllResult:
    success: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExclusionStatRow:
    user_id: int
    kind: EntityKind
    reason: ExclusionReason
    count: int


@dataclass
class ExclusionStats:
    version: int | None
    users: int
    by_kind: dict[EntityKind, dict[ExclusionReason, int]]
    rows: list[ExclusionStatRow]


class VisibilityQueryService:
    """Serves visibility decisions and keeps cached exclusion sets current.

    Args:
        registry: Graph snapshot registry; the service subscribes to version bumps.
        rule_store: Source of rules and hidden entities.
        computer: Exclusion computer (built from registry/rule_store if omitted).
        cache: Exclusion cache (a fresh one if omitted).
        workers: Recompute worker pool size.
        query_wait_timeout_s: How long a query waits for a missing entry.
        retry_delays: Backoff delays for graph/rule reads.
        on_stored: Called with every exclusion set installed in the cache.
    """

    def __init__(
        self,
        registry: GraphRegistry,
        rule_store: RuleStore,
        *,
        computer: ExclusionComputer | None = None,
        cache: ExclusionCache | None = None,
        workers: int = 4,
        query_wait_timeout_s: float = 5.0,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS_S,
        on_stored: Callable[[ExclusionSet], None] | None = None,
    ):
        self._registry = registry
        self._rule_store = rule_store
        self._computer = computer or ExclusionComputer(registry, rule_store, retry_delays)
        self._cache = cache or ExclusionCache()
        self._wait_timeout_s = query_wait_timeout_s
        self._on_stored = on_stored
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="exclusion-recompute"
        )
        self._inflight: dict[int, Future] = {}
        self._inflight_lock = threading.Lock()
        self._user_locks: dict[int, threading.RLock] = {}
        self._user_locks_guard = threading.Lock()
        registry.subscribe(self.on_sync_version_bumped)

    @property
    def cache(self) -> ExclusionCache:
        return self._cache

    @property
    def registry(self) -> GraphRegistry:
        return self._registry

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # =========================================================================
    # Queries (fail closed)
    # =========================================================================

    def is_visible(self, user_id: int, kind: EntityKind | str, entity_id: str) -> bool:
        kind = EntityKind(kind)
        entry = self._entry_for(user_id)
        if entry is None:
            return False
        # Ids the snapshot does not know yet have never been checked against
        # the user's rules.
        entity_id = str(entity_id)
        return entry.graph.contains(kind, entity_id) and not entry.is_excluded(
            EntityRef(kind, entity_id)
        )

    def excluded_ids(self, user_id: int, kind: EntityKind | str) -> frozenset[str]:
        """Ids of ``kind`` the user must not see.

        Fails closed to every id of the kind in the current snapshot.

        Raises:
            ContentUnavailableError: If no snapshot exists to enumerate.
        """
        kind = EntityKind(kind)
        entry = self._entry_for(user_id)
        if entry is not None:
            return entry.excluded_ids(kind)
        try:
            graph, _ = self._registry.get_view()
        except SnapshotUnavailableError as exc:
            raise ContentUnavailableError() from exc
        return graph.ids(kind)

    def visible_count(self, user_id: int, kind: EntityKind | str) -> int:
        kind = EntityKind(kind)
        entry = self._entry_for(user_id)
        if entry is None:
            return 0
        return entry.visible_count(kind)

    def _entry_for(self, user_id: int) -> ExclusionSet | None:
        version = self._registry.current_version
        if version is None:
            logger.warning("visibility_failed_closed", user_id=user_id, reason="no_snapshot")
            return None
        entry = self._cache.get(user_id, version)
        if entry is not None:
            return entry

        future = self._ensure_recompute(user_id)
        try:
            future.result(timeout=self._wait_timeout_s)
        except FutureTimeoutError:
            logger.warning(
                "visibility_failed_closed",
                user_id=user_id,
                reason="timeout",
                timeout_s=self._wait_timeout_s,
            )
            return None
        except ExclusionError as exc:
            logger.warning(
                "visibility_failed_closed", user_id=user_id, reason="recompute_failed", error=str(exc)
            )
            return None
        except Exception:
            logger.exception("visibility_failed_closed", user_id=user_id, reason="unexpected_error")
            return None

        entry = self._cache.latest(user_id)
        if entry is None or entry.version < version:
            logger.warning("visibility_failed_closed", user_id=user_id, reason="superseded")
            return None
        return entry

    # =========================================================================
    # Admin operations
    # =========================================================================

    def recompute_user(self, user_id: int) -> ExclusionSet | None:
        """Recompute and cache one user's exclusions, joining any in-flight run.

        Returns None if the result was superseded by a newer graph version.

        Raises:
            ExclusionError: If the computation failed.
        """
        return self._ensure_recompute(user_id).result()

    def recompute_all(self) -> RecomputeAllResult:
        """Recompute every known user on the worker pool, isolating failures."""
        user_ids = set(self._rule_store.list_user_ids()) | set(self._cache.users())
        futures = {user_id: self._ensure_recompute(user_id) for user_id in sorted(user_ids)}

        result = RecomputeAllResult()
        for user_id, future in futures.items():
            try:
                stored = future.result()
            except Exception as exc:
                result.failed += 1
                result.errors.append(f"user {user_id}: {exc}")
                logger.warning("exclusion_recompute_user_failed", user_id=user_id, error=str(exc))
                continue
            if stored is None:
                result.failed += 1
                result.errors.append(f"user {user_id}: superseded by a newer graph version")
                continue
            result.success += 1

        logger.info(
            "exclusion_recompute_all_completed",
            users=len(futures),
            success=result.success,
            failed=result.failed,
        )
        return result

    def get_exclusion_stats(self) -> ExclusionStats:
        rows: list[ExclusionStatRow] = []
        by_kind: dict[EntityKind, dict[ExclusionReason, int]] = {}
        entries = self._cache.entries()
        for entry in entries:
            for kind, reasons in entry.reason_counts().items():
                for reason, count in reasons.items():
                    rows.append(ExclusionStatRow(entry.user_id, kind, reason, count))
                    per_kind = by_kind.setdefault(kind, {})
                    per_kind[reason] = per_kind.get(reason, 0) + count
        rows.sort(key=lambda row: (row.user_id, row.kind.value, row.reason.value))
        return ExclusionStats(
            version=self._registry.current_version,
            users=len(entries),
            by_kind=by_kind,
            rows=rows,
        )

    # =========================================================================
    # Invalidation hooks
    # =========================================================================

    def on_sync_version_bumped(
        self, old_version: int | None, new_version: int, changed_kinds: frozenset[EntityKind]
    ) -> None:
        """Move cached users onto a newly published graph version.

        Unchanged content re-stamps existing entries. Otherwise entries for
        older versions are dropped and every previously cached user is
        recomputed on the worker pool.
        """
        if old_version is not None and not changed_kinds:
            graph, _ = self._registry.get_view(new_version)
            restamped = 0
            for entry in self._cache.entries():
                if entry.version == old_version and self._cache.store(
                    entry.rebased(graph), current_version=new_version
                ):
                    restamped += 1
            logger.info(
                "exclusion_cache_restamped",
                old_version=old_version,
                new_version=new_version,
                users=restamped,
            )
            return

        users = self._cache.users()
        evicted = self._cache.evict_before(new_version)
        for user_id in users:
            self._ensure_recompute(user_id)
        logger.info(
            "exclusion_sync_recompute_scheduled",
            old_version=old_version,
            new_version=new_version,
            changed_kinds=sorted(kind.value for kind in changed_kinds),
            users=len(users),
            evicted=evicted,
        )

    def on_rule_changed(
        self,
        user_id: int,
        old_rule: RestrictionRule | None = None,
        new_rule: RestrictionRule | None = None,
    ) -> ExclusionSet | None:
        """Bring a user's exclusions in line with a committed rule change."""
        if ExclusionComputer.supports_incremental(old_rule, new_rule):
            return self._apply_incremental(
                user_id,
                partial(self._computer.apply_rule_change, old_rule=old_rule, new_rule=new_rule),
                op="rule_change",
            )
        return self._recompute_or_invalidate(user_id)

    def on_hide_toggled(
        self, user_id: int, kind: EntityKind | str, entity_id: str, hidden: bool
    ) -> ExclusionSet | None:
        """Bring a user's exclusions in line with a committed hide or unhide."""
        kind = EntityKind(kind)
        entity_id = str(entity_id)
        if hidden:
            apply = partial(self._computer.apply_hide, kind=kind, entity_id=entity_id)
        else:
            apply = partial(self._computer.apply_unhide, kind=kind, entity_id=entity_id)
        return self._apply_incremental(user_id, apply, op="hide" if hidden else "unhide")

    def on_hides_added(
        self, user_id: int, entities: Iterable[tuple[EntityKind | str, str]]
    ) -> ExclusionSet | None:
        """Apply several committed hides in one incremental pass."""
        refs = tuple(EntityRef(EntityKind(kind), str(entity_id)) for kind, entity_id in entities)
        if not refs:
            return self._entry_for(user_id)
        apply = partial(self._computer.apply_hides, refs=refs)
        return self._apply_incremental(user_id, apply, op="bulk_hide")

    def on_hidden_cleared(self, user_id: int) -> ExclusionSet | None:
        """Rebuild a user's exclusions after hidden entities were removed in bulk."""
        with self._user_lock(user_id):
            return self._recompute_or_invalidate(user_id)

    def _apply_incremental(
        self,
        user_id: int,
        apply: Callable[[ExclusionSet], ExclusionSet],
        op: str,
    ) -> ExclusionSet | None:
        with self._user_lock(user_id):
            version = self._registry.current_version
            current = self._cache.get(user_id, version) if version is not None else None
            if current is None:
                return self._recompute_or_invalidate(user_id)

            try:
                updated = apply(current)
            except (InconsistentExclusionStateError, StaleVersionDiscarded) as exc:
                logger.warning(
                    "exclusion_incremental_fallback", user_id=user_id, op=op, error=str(exc)
                )
                return self._recompute_or_invalidate(user_id)
            except ExclusionError:
                self._cache.invalidate(user_id)
                raise

            if not self._cache.replace(current, updated):
                logger.info("exclusion_incremental_superseded", user_id=user_id, op=op)
                return self._recompute_or_invalidate(user_id)
            self._notify_stored(updated)
            return updated

    # =========================================================================
    # Recompute plumbing
    # =========================================================================

    def _user_lock(self, user_id: int) -> threading.RLock:
        with self._user_locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = threading.RLock()
            return lock

    def _ensure_recompute(self, user_id: int) -> Future:
        with self._inflight_lock:
            future = self._inflight.get(user_id)
            if future is not None:
                return future
            future = self._executor.submit(self._recompute_and_store, user_id)
            self._inflight[user_id] = future
        future.add_done_callback(partial(self._clear_inflight, user_id))
        return future

    def _clear_inflight(self, user_id: int, future: Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(user_id) is future:
                del self._inflight[user_id]

    def _recompute_or_invalidate(self, user_id: int) -> ExclusionSet | None:
        # A user whose exclusions cannot be recomputed must not keep serving
        # the pre-change entry.
        try:
            return self._recompute_and_store(user_id)
        except ExclusionError:
            self._cache.invalidate(user_id)
            raise

    def _recompute_and_store(self, user_id: int) -> ExclusionSet | None:
        with self._user_lock(user_id):
            for _attempt in range(_STALE_RECOMPUTE_ATTEMPTS):
                result = self._computer.compute_full(user_id)
                if self._cache.store(result, current_version=self._registry.current_version):
                    self._notify_stored(result)
                    return result
            logger.warning(
                "exclusion_recompute_superseded",
                user_id=user_id,
                attempts=_STALE_RECOMPUTE_ATTEMPTS,
            )
            return None

    def _notify_stored(self, exclusions: ExclusionSet) -> None:
        if self._on_stored is None:
            return
        try:
            self._on_stored(exclusions)
        except Exception:
            # Mirrors are derived data; the cache entry stays authoritative.
            logger.exception(
                "exclusion_projection_failed",
                user_id=exclusions.user_id,
                graph_version=exclusions.version,
            )
