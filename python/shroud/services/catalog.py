"""Loads the catalog tables into an entity graph snapshot.

Soft-deleted rows (``deleted_at`` set) are left out, and so is any
relationship row that points at one.
"""

from collections import defaultdict

from sqlalchemy import Table, select
from sqlalchemy.orm import Session

from shroud.db.models import (
    CatalogGallery,
    CatalogGroup,
    CatalogImage,
    CatalogPerformer,
    CatalogScene,
    CatalogStudio,
    CatalogTag,
    gallery_performers,
    gallery_tags,
    group_parents,
    group_tags,
    image_galleries,
    image_performers,
    image_tags,
    performer_tags,
    scene_galleries,
    scene_groups,
    scene_performers,
    scene_tags,
    studio_tags,
    tag_parents,
)
from shroud.logging import get_logger
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
from shroud.services.visibility.registry import GraphRegistry

logger = get_logger(__name__)


def _live(db: Session, model) -> dict[str, object]:
    rows = db.scalars(select(model).where(model.deleted_at.is_(None)))
    return {row.id: row for row in rows}


def _pairs(
    db: Session, table: Table, left_live: dict, right_live: dict
) -> dict[str, set[str]]:
    left_col, right_col = list(table.columns)
    grouped: dict[str, set[str]] = defaultdict(set)
    for left, right in db.execute(select(left_col, right_col)):
        if left in left_live and right in right_live:
            grouped[left].add(right)
    return grouped


def load_entity_graph(db: Session, version: int) -> EntityGraphView:
    """Read every live catalog row into an ``EntityGraphView``."""
    scenes = _live(db, CatalogScene)
    performers = _live(db, CatalogPerformer)
    studios = _live(db, CatalogStudio)
    tags = _live(db, CatalogTag)
    groups = _live(db, CatalogGroup)
    galleries = _live(db, CatalogGallery)
    images = _live(db, CatalogImage)

    scene_performer_ids = _pairs(db, scene_performers, scenes, performers)
    scene_tag_ids = _pairs(db, scene_tags, scenes, tags)
    scene_group_ids = _pairs(db, scene_groups, scenes, groups)
    scene_gallery_ids = _pairs(db, scene_galleries, scenes, galleries)
    performer_tag_ids = _pairs(db, performer_tags, performers, tags)
    studio_tag_ids = _pairs(db, studio_tags, studios, tags)
    group_tag_ids = _pairs(db, group_tags, groups, tags)
    group_parent_ids = _pairs(db, group_parents, groups, groups)
    tag_parent_ids = _pairs(db, tag_parents, tags, tags)
    gallery_performer_ids = _pairs(db, gallery_performers, galleries, performers)
    gallery_tag_ids = _pairs(db, gallery_tags, galleries, tags)
    image_gallery_ids = _pairs(db, image_galleries, images, galleries)
    image_performer_ids = _pairs(db, image_performers, images, performers)
    image_tag_ids = _pairs(db, image_tags, images, tags)

    def live_ref(value: str | None, live: dict) -> str | None:
        return value if value in live else None

    graph = EntityGraphView(
        version,
        scenes=[
            SceneNode(
                id=scene_id,
                studio_id=live_ref(row.studio_id, studios),
                performer_ids=scene_performer_ids.get(scene_id, ()),
                tag_ids=scene_tag_ids.get(scene_id, ()),
                group_ids=scene_group_ids.get(scene_id, ()),
                gallery_ids=scene_gallery_ids.get(scene_id, ()),
            )
            for scene_id, row in scenes.items()
        ],
        performers=[
            PerformerNode(id=performer_id, tag_ids=performer_tag_ids.get(performer_id, ()))
            for performer_id in performers
        ],
        studios=[
            StudioNode(
                id=studio_id,
                parent_id=live_ref(row.parent_id, studios),
                tag_ids=studio_tag_ids.get(studio_id, ()),
            )
            for studio_id, row in studios.items()
        ],
        tags=[TagNode(id=tag_id, parent_ids=tag_parent_ids.get(tag_id, ())) for tag_id in tags],
        groups=[
            GroupNode(
                id=group_id,
                studio_id=live_ref(row.studio_id, studios),
                tag_ids=group_tag_ids.get(group_id, ()),
                parent_ids=group_parent_ids.get(group_id, ()),
            )
            for group_id, row in groups.items()
        ],
        galleries=[
            GalleryNode(
                id=gallery_id,
                studio_id=live_ref(row.studio_id, studios),
                performer_ids=gallery_performer_ids.get(gallery_id, ()),
                tag_ids=gallery_tag_ids.get(gallery_id, ()),
            )
            for gallery_id, row in galleries.items()
        ],
        images=[
            ImageNode(
                id=image_id,
                studio_id=live_ref(row.studio_id, studios),
                performer_ids=image_performer_ids.get(image_id, ()),
                tag_ids=image_tag_ids.get(image_id, ()),
                gallery_ids=image_gallery_ids.get(image_id, ()),
            )
            for image_id, row in images.items()
        ],
    )
    return graph


def publish_catalog_snapshot(db: Session, registry: GraphRegistry) -> int:
    """Load the catalog and publish it as the registry's next version."""

    def build(version: int) -> EntityGraphView:
        graph = load_entity_graph(db, version)
        logger.info("catalog_snapshot_loaded", graph=repr(graph))
        return graph

    return registry.publish_next(build)
