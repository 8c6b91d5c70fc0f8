"""Per-user exclusion state: every excluded entity with all of its causes."""

from __future__ import annotations

import hashlib
from collections import defaultdict
from collections.abc import Iterable, Iterator

from shroud.services.visibility.graph import EntityGraphView
from shroud.services.visibility.types import (
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    ExclusionRecord,
    natural_id_key,
)


class ExclusionSet:
    """Exclusions for one user at one graph version.

    An entity is excluded while it has at least one cause. The persisted
    record is the highest-precedence cause. A reverse index from cause
    source to targets lets incremental updates retract everything that
    came from one entity without a scan.

    Visible counts are maintained as causes come and go and only consider
    entities present in the graph.
    """

    def __init__(self, user_id: int, graph: EntityGraphView):
        self.user_id = user_id
        self.graph = graph
        self._causes: dict[EntityRef, set[Cause]] = {}
        self._by_source: dict[EntityRef, set[EntityRef]] = defaultdict(set)
        self._excluded: dict[EntityKind, set[str]] = {kind: set() for kind in EntityKind}
        self._visible: dict[EntityKind, int] = {kind: graph.count(kind) for kind in EntityKind}

    @property
    def version(self) -> int:
        return self.graph.version

    def __len__(self) -> int:
        return len(self._causes)

    def __repr__(self) -> str:
        return f"<ExclusionSet user={self.user_id} v{self.version} excluded={len(self)}>"

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def add(self, ref: EntityRef, cause: Cause) -> bool:
        """Record ``cause`` on ``ref``. Returns True if ``ref`` became excluded."""
        causes = self._causes.get(ref)
        newly_excluded = causes is None
        if newly_excluded:
            causes = self._causes[ref] = set()
            self._excluded[ref.kind].add(ref.id)
            if self.graph.contains(ref.kind, ref.id):
                self._visible[ref.kind] -= 1
        causes.add(cause)
        source = cause.source
        if source is not None:
            self._by_source[source].add(ref)
        return newly_excluded

    def discard(self, ref: EntityRef, cause: Cause) -> bool:
        """Drop ``cause`` from ``ref``. Returns True if ``ref`` became visible."""
        causes = self._causes.get(ref)
        if causes is None or cause not in causes:
            return False
        causes.remove(cause)
        source = cause.source
        if source is not None and not any(c.source == source for c in causes):
            targets = self._by_source.get(source)
            if targets is not None:
                targets.discard(ref)
                if not targets:
                    del self._by_source[source]
        if causes:
            return False
        del self._causes[ref]
        self._excluded[ref.kind].discard(ref.id)
        if self.graph.contains(ref.kind, ref.id):
            self._visible[ref.kind] += 1
        return True

    def clear_reason(self, kind: EntityKind, reason: ExclusionReason) -> list[EntityRef]:
        """Drop every ``reason`` cause on entities of ``kind``.

        Returns the entities that became visible.
        """
        released = []
        for entity_id in list(self._excluded[kind]):
            ref = EntityRef(kind, entity_id)
            for cause in [c for c in self._causes[ref] if c.reason is reason]:
                if self.discard(ref, cause):
                    released.append(ref)
        return released

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def is_excluded(self, ref: EntityRef) -> bool:
        return ref in self._causes

    def is_excluded_id(self, kind: EntityKind, entity_id: str) -> bool:
        return entity_id in self._excluded[kind]

    def causes(self, ref: EntityRef) -> frozenset[Cause]:
        return frozenset(self._causes.get(ref, ()))

    def targets_of(self, source: EntityRef) -> list[EntityRef]:
        """Entities holding at least one cause sourced at ``source``."""
        return sorted(self._by_source.get(source, ()), key=EntityRef.sort_key)

    def excluded_ids(self, kind: EntityKind) -> frozenset[str]:
        return frozenset(self._excluded[kind])

    def visible_count(self, kind: EntityKind) -> int:
        return self._visible[kind]

    def refs(self) -> Iterator[EntityRef]:
        return iter(self._causes)

    def primary_cause(self, ref: EntityRef) -> Cause | None:
        causes = self._causes.get(ref)
        if not causes:
            return None
        return min(causes, key=Cause.sort_key)

    def record(self, ref: EntityRef) -> ExclusionRecord | None:
        cause = self.primary_cause(ref)
        if cause is None:
            return None
        return ExclusionRecord(
            user_id=self.user_id,
            kind=ref.kind,
            entity_id=ref.id,
            reason=cause.reason,
            source_kind=cause.source_kind,
            source_id=cause.source_id,
            computed_at_version=self.version,
        )

    def records(self, kind: EntityKind | None = None) -> list[ExclusionRecord]:
        refs: Iterable[EntityRef] = self._causes
        if kind is not None:
            refs = (EntityRef(kind, entity_id) for entity_id in self._excluded[kind])
        ordered = sorted(refs, key=EntityRef.sort_key)
        return [self.record(ref) for ref in ordered]

    def reason_counts(self) -> dict[EntityKind, dict[ExclusionReason, int]]:
        counts: dict[EntityKind, dict[ExclusionReason, int]] = {}
        for ref in self._causes:
            reason = self.primary_cause(ref).reason
            per_kind = counts.setdefault(ref.kind, {})
            per_kind[reason] = per_kind.get(reason, 0) + 1
        return counts

    def fingerprint(self) -> str:
        """Stable digest of the authoritative records."""
        digest = hashlib.sha256()
        for record in self.records():
            digest.update(
                "\t".join(
                    (
                        record.kind.value,
                        record.entity_id,
                        record.reason.value,
                        record.source_kind.value if record.source_kind else "",
                        record.source_id or "",
                        str(record.computed_at_version),
                    )
                ).encode()
            )
            digest.update(b"\n")
        return digest.hexdigest()

    # -------------------------------------------------------------------------
    # Copies
    # -------------------------------------------------------------------------

    def copy(self) -> ExclusionSet:
        return self._clone(self.graph)

    def rebased(self, graph: EntityGraphView) -> ExclusionSet:
        """Same causes against a newer snapshot with identical content.

        The caller is responsible for knowing that no entity kind changed.
        """
        return self._clone(graph)

    def _clone(self, graph: EntityGraphView) -> ExclusionSet:
        clone = ExclusionSet.__new__(ExclusionSet)
        clone.user_id = self.user_id
        clone.graph = graph
        clone._causes = {ref: set(causes) for ref, causes in self._causes.items()}
        clone._by_source = defaultdict(
            set, {source: set(targets) for source, targets in self._by_source.items()}
        )
        clone._excluded = {kind: set(ids) for kind, ids in self._excluded.items()}
        clone._visible = dict(self._visible)
        return clone


def first_excluded(
    state: ExclusionSet,
    candidates: Iterable[EntityRef],
    pending: frozenset[EntityRef] | set[EntityRef] = frozenset(),
) -> EntityRef | None:
    """The lowest (kind order, natural id) candidate that is excluded.

    ``pending`` entities count as excluded even if not yet recorded.
    """
    best: EntityRef | None = None
    best_key = None
    for ref in candidates:
        if ref not in pending and not state.is_excluded(ref):
            continue
        key = ref.sort_key()
        if best_key is None or key < best_key:
            best, best_key = ref, key
    return best


def sorted_ids(ids: Iterable[str]) -> list[str]:
    return sorted(ids, key=natural_id_key)
