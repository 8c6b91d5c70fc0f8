"""Full and incremental computation of a user's exclusion set.

Full computation runs the cascade resolver, the content filter and the empty
pruner against one graph snapshot. Incremental updates apply a single hide,
unhide or EXCLUDE-rule diff to an existing set and re-run only the pruning
tiers downstream of what moved. Both paths produce the same set.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from contextlib import ExitStack
from itertools import chain
from typing import TypeVar

from shroud.errors import (
    InconsistentExclusionStateError,
    RuleStoreUnavailableError,
    SnapshotUnavailableError,
    StaleVersionDiscarded,
)
from shroud.logging import get_logger
from shroud.services.visibility.cascade import CascadeResolver
from shroud.services.visibility.graph import EntityGraphView
from shroud.services.visibility.pruner import EmptyEntityPruner, downstream_tiers
from shroud.services.visibility.registry import GraphRegistry
from shroud.services.visibility.scene_filter import SceneVisibilityFilter
from shroud.services.visibility.state import ExclusionSet, sorted_ids
from shroud.services.visibility.types import (
    CONTENT_KINDS,
    KIND_INDEX,
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    HiddenEntity,
    RestrictionRule,
    RuleIndex,
    RuleStore,
)

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAYS_S: tuple[float, ...] = (0.1, 0.5, 2.0)


class ExclusionComputer:
    """Builds and maintains ``ExclusionSet`` instances.

    Args:
        registry: Source of graph snapshots.
        rule_store: Source of restriction rules and hidden entities.
        retry_delays: Backoff delays (seconds) between attempts to read the
            graph or the rule store. One attempt is made per delay plus a
            final one.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        registry: GraphRegistry,
        rule_store: RuleStore,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS_S,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._registry = registry
        self._rule_store = rule_store
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Full computation
    # -------------------------------------------------------------------------

    def compute_full(self, user_id: int, version: int | None = None) -> ExclusionSet:
        """Compute a user's exclusions from scratch.

        Raises:
            SnapshotUnavailableError: If no graph could be leased after retries.
            RuleStoreUnavailableError: If rules could not be read after retries.
        """
        started = time.monotonic()
        stack, graph = self._with_retry(
            lambda: self._open_lease(version), user_id=user_id, source="graph"
        )
        with stack:
            rules, hidden = self._load_rules(user_id)
            result = self.compute_from(graph, user_id, rules, hidden)

        logger.info(
            "exclusion_recompute_completed",
            user_id=user_id,
            graph_version=graph.version,
            excluded=len(result),
            rules=len(rules),
            hidden=len(hidden),
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return result

    def compute_from(
        self,
        graph: EntityGraphView,
        user_id: int,
        rules: Iterable[RestrictionRule],
        hidden: Iterable[HiddenEntity],
    ) -> ExclusionSet:
        """Pure computation against an explicit graph and rule set."""
        rules = sorted(rules, key=lambda rule: KIND_INDEX[rule.kind])
        index = RuleIndex.build(rules, hidden)
        result = ExclusionSet(user_id, graph)
        resolver = CascadeResolver(graph)

        for rule in rules:
            for ref, cause in resolver.resolve(rule).causes:
                result.add(ref, cause)

        for ref in index.hidden_refs():
            result.add(ref, Cause(ExclusionReason.hidden))
            for target, cause in resolver.expand(ref, ExclusionReason.cascade):
                result.add(target, cause)

        content = SceneVisibilityFilter(graph, index)
        for ref, cause in chain(content.filter_scenes(), content.filter_images()):
            result.add(ref, cause)

        EmptyEntityPruner(graph).prune(result)
        return result

    # -------------------------------------------------------------------------
    # Incremental updates
    # -------------------------------------------------------------------------

    def apply_hide(
        self, current: ExclusionSet, kind: EntityKind | str, entity_id: str
    ) -> ExclusionSet:
        """Return a copy of ``current`` with one more hidden entity applied."""
        return self.apply_hides(current, [EntityRef(EntityKind(kind), str(entity_id))])

    def apply_hides(self, current: ExclusionSet, refs: Iterable[EntityRef]) -> ExclusionSet:
        """Return a copy of ``current`` with several hidden entities applied.

        Cascades from every entity are added first and the affected pruning
        tiers run once at the end.
        """
        self._require_current(current)
        refs = list(refs)
        updated = current.copy()
        graph = updated.graph
        resolver = CascadeResolver(graph)
        content = SceneVisibilityFilter(graph)
        changed: set[EntityKind] = set()

        for ref in refs:
            updated.add(ref, Cause(ExclusionReason.hidden))
            changed.add(ref.kind)
            derived = chain(
                resolver.expand(ref, ExclusionReason.cascade),
                content.causes_for_hidden(ref),
            )
            for target, cause in derived:
                updated.add(target, cause)
                changed.add(target.kind)

        report = EmptyEntityPruner(graph).prune(updated, downstream_tiers(changed))
        logger.debug(
            "exclusion_hide_applied",
            user_id=current.user_id,
            entities=[str(ref) for ref in refs],
            tiers=[tier.value for tier in report.tiers],
        )
        return updated

    def apply_unhide(
        self, current: ExclusionSet, kind: EntityKind | str, entity_id: str
    ) -> ExclusionSet:
        """Return a copy of ``current`` with one hidden entity retracted.

        Every entity that loses its last cause is re-checked against the
        stored rules and hides.

        Raises:
            InconsistentExclusionStateError: If a re-checked entity turns out
                to be excluded for a reason ``current`` did not record.
        """
        self._require_current(current)
        ref = EntityRef(EntityKind(kind), str(entity_id))
        updated = current.copy()
        changed = {ref.kind}
        released = []

        if updated.discard(ref, Cause(ExclusionReason.hidden)):
            released.append(ref)
        released.extend(self._retract(updated, ref, ExclusionReason.cascade, changed))

        index = self._load_index(current.user_id)
        if index.is_hidden(ref):
            raise InconsistentExclusionStateError(
                current.user_id, str(ref), "entity is still hidden in the rule store"
            )
        self._recheck(updated, released, index)

        report = EmptyEntityPruner(updated.graph).prune(updated, downstream_tiers(changed))
        logger.debug(
            "exclusion_unhide_applied",
            user_id=current.user_id,
            entity=str(ref),
            released=len(released),
            tiers=[tier.value for tier in report.tiers],
        )
        return updated

    @staticmethod
    def supports_incremental(
        old_rule: RestrictionRule | None, new_rule: RestrictionRule | None
    ) -> bool:
        """Whether a rule change can be applied without a full recompute.

        Only EXCLUDE-to-EXCLUDE diffs (including creating or clearing an
        EXCLUDE rule) qualify.
        """
        rules = [rule for rule in (old_rule, new_rule) if rule is not None]
        if not rules:
            return False
        if any(rule.is_include for rule in rules):
            return False
        return len({rule.kind for rule in rules}) == 1

    def apply_rule_change(
        self,
        current: ExclusionSet,
        old_rule: RestrictionRule | None,
        new_rule: RestrictionRule | None,
    ) -> ExclusionSet:
        """Apply an EXCLUDE rule diff to a copy of ``current``.

        Raises:
            ValueError: If the change involves an INCLUDE rule.
            InconsistentExclusionStateError: See ``apply_unhide``.
        """
        if not self.supports_incremental(old_rule, new_rule):
            raise ValueError("only EXCLUDE rule changes can be applied incrementally")
        self._require_current(current)
        kind = (new_rule or old_rule).kind
        old_ids = old_rule.ids if old_rule is not None else frozenset()
        new_ids = new_rule.ids if new_rule is not None else frozenset()
        added = sorted_ids(new_ids - old_ids)
        removed = sorted_ids(old_ids - new_ids)

        updated = current.copy()
        graph = updated.graph
        resolver = CascadeResolver(graph)
        content = SceneVisibilityFilter(graph)
        changed: set[EntityKind] = set()
        released: list[EntityRef] = []

        for entity_id in added:
            source = EntityRef(kind, entity_id)
            updated.add(source, Cause(ExclusionReason.restricted))
            changed.add(kind)
            derived = chain(
                resolver.expand(source, ExclusionReason.restricted),
                content.causes_for_rule_id(kind, entity_id),
            )
            for target, cause in derived:
                updated.add(target, cause)
                changed.add(target.kind)

        for entity_id in removed:
            source = EntityRef(kind, entity_id)
            changed.add(kind)
            if updated.discard(source, Cause(ExclusionReason.restricted)):
                released.append(source)
            released.extend(self._retract(updated, source, ExclusionReason.restricted, changed))

        if released:
            self._recheck(updated, released, self._load_index(current.user_id))

        report = EmptyEntityPruner(graph).prune(updated, downstream_tiers(changed))
        logger.debug(
            "exclusion_rule_change_applied",
            user_id=current.user_id,
            kind=kind.value,
            added=len(added),
            removed=len(removed),
            tiers=[tier.value for tier in report.tiers],
        )
        return updated

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _retract(
        self,
        state: ExclusionSet,
        source: EntityRef,
        reason: ExclusionReason,
        changed: set[EntityKind],
    ) -> list[EntityRef]:
        """Drop every ``reason`` cause sourced at ``source``; return released entities."""
        released = []
        for target in state.targets_of(source):
            for cause in state.causes(target):
                if cause.reason is reason and cause.source == source:
                    if state.discard(target, cause):
                        released.append(target)
            changed.add(target.kind)
        return released

    def _recheck(self, state: ExclusionSet, released: Iterable[EntityRef], index: RuleIndex) -> None:
        graph = state.graph
        resolver = CascadeResolver(graph)
        content = SceneVisibilityFilter(graph, index)
        for ref in released:
            if ref.kind in CONTENT_KINDS:
                fresh = content.causes_for(ref)
            else:
                fresh = resolver.causes_for(ref, index)
            if fresh:
                detail = ", ".join(
                    f"{cause.reason.value}"
                    + (f"<-{cause.source}" if cause.source is not None else "")
                    for cause in sorted(fresh, key=Cause.sort_key)
                )
                raise InconsistentExclusionStateError(state.user_id, str(ref), detail)

    def _require_current(self, current: ExclusionSet) -> None:
        latest = self._registry.current_version
        if latest is not None and current.version != latest:
            raise StaleVersionDiscarded(current.user_id, current.version, latest)

    def _open_lease(self, version: int | None) -> tuple[ExitStack, EntityGraphView]:
        stack = ExitStack()
        graph = stack.enter_context(self._registry.lease(version))
        return stack, graph

    def _load_rules(
        self, user_id: int
    ) -> tuple[list[RestrictionRule], list[HiddenEntity]]:
        rules = self._with_retry(
            lambda: list(self._rule_store.get_restriction_rules(user_id)),
            user_id=user_id,
            source="restriction_rules",
        )
        hidden = self._with_retry(
            lambda: list(self._rule_store.get_hidden_entities(user_id)),
            user_id=user_id,
            source="hidden_entities",
        )
        return rules, hidden

    def _load_index(self, user_id: int) -> RuleIndex:
        rules, hidden = self._load_rules(user_id)
        return RuleIndex.build(rules, hidden)

    def _with_retry(self, fn: Callable[[], T], *, user_id: int, source: str) -> T:
        delays = self._retry_delays
        for attempt in range(len(delays) + 1):
            try:
                return fn()
            except (SnapshotUnavailableError, RuleStoreUnavailableError) as exc:
                if attempt >= len(delays):
                    logger.error(
                        "exclusion_input_unavailable",
                        user_id=user_id,
                        source=source,
                        attempts=attempt + 1,
                        error=str(exc),
                    )
                    raise
                logger.warning(
                    "exclusion_input_retry",
                    user_id=user_id,
                    source=source,
                    attempt=attempt + 1,
                    delay_s=delays[attempt],
                    error=str(exc),
                )
                self._sleep(delays[attempt])
        raise AssertionError("unreachable")
