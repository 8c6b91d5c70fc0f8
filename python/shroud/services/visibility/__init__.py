"""Per-user content visibility exclusion engine."""

from shroud.services.visibility.cache import ExclusionCache
from shroud.services.visibility.cascade import CascadeResolver, RuleExpansion
from shroud.services.visibility.computer import ExclusionComputer
from shroud.services.visibility.graph import (
    EntityGraphView,
    GalleryNode,
    GroupNode,
    ImageNode,
    PerformerNode,
    SceneNode,
    StudioNode,
    TagNode,
)
from shroud.services.visibility.pruner import EmptyEntityPruner
from shroud.services.visibility.query import (
    ExclusionStats,
    RecomputeAllResult,
    VisibilityQueryService,
)
from shroud.services.visibility.registry import GraphRegistry
from shroud.services.visibility.scene_filter import SceneVisibilityFilter
from shroud.services.visibility.state import ExclusionSet
from shroud.services.visibility.types import (
    Cause,
    EntityKind,
    EntityRef,
    ExclusionReason,
    ExclusionRecord,
    HiddenEntity,
    RestrictionRule,
    RuleMode,
)

__all__ = [
    "CascadeResolver",
    "Cause",
    "EmptyEntityPruner",
    "EntityGraphView",
    "EntityKind",
    "EntityRef",
    "ExclusionCache",
    "ExclusionComputer",
    "ExclusionReason",
    "ExclusionRecord",
    "ExclusionSet",
    "ExclusionStats",
    "GalleryNode",
    "GraphRegistry",
    "GroupNode",
    "HiddenEntity",
    "ImageNode",
    "PerformerNode",
    "RecomputeAllResult",
    "RestrictionRule",
    "RuleExpansion",
    "RuleMode",
    "SceneNode",
    "SceneVisibilityFilter",
    "StudioNode",
    "TagNode",
    "VisibilityQueryService",
]
