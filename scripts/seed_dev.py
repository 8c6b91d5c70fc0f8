#!/usr/bin/env python
"""Seed development database with a small catalog and one restricted user.

Seeds a catalog where tag t123 marks studio s9, whose only scene sc1 features
performer p1. User 2 has an EXCLUDE rule on t123, so for that user t123, s9
and sc1 are restricted and p1 is empty. User 1 is an admin with no rules.

Constraints:
- Refuses to run in staging or prod (SHROUD_ENV check)
- Idempotent via merge on primary keys
- Never runs automatically (manual invocation only)

Usage:
    cd python && DATABASE_URL=... python ../scripts/seed_dev.py
"""

import os
import sys


def main():
    # 1. Environment check (hard fail in staging/prod)
    shroud_env = os.getenv("SHROUD_ENV", "local")
    if shroud_env not in ("local", "test"):
        print(f"ERROR: seed_dev.py refuses to run in SHROUD_ENV={shroud_env}")
        sys.exit(1)

    # 2. Check DATABASE_URL
    if not os.getenv("DATABASE_URL"):
        print("ERROR: DATABASE_URL environment variable must be set")
        sys.exit(1)

    from sqlalchemy import insert, select

    from shroud.db.models import (
        CatalogPerformer,
        CatalogScene,
        CatalogStudio,
        CatalogTag,
        User,
        scene_performers,
        studio_tags,
    )
    from shroud.db.session import get_session_factory, transaction
    from shroud.services.rules import set_restriction_rule
    from shroud.services.visibility.types import EntityKind, RuleMode

    db = get_session_factory()()
    try:
        with transaction(db):
            db.merge(User(id=1, is_admin=True))
            db.merge(User(id=2, is_admin=False))
            db.merge(CatalogTag(id="t123", name="Restricted"))
            db.merge(CatalogStudio(id="s9", name="Studio Nine"))
            db.merge(CatalogScene(id="sc1", studio_id="s9", title="Scene One"))
            db.merge(CatalogPerformer(id="p1", name="Performer One"))
            db.flush()

            # 3. Junction rows (skip if present)
            for table, row in (
                (studio_tags, {"studio_id": "s9", "tag_id": "t123"}),
                (scene_performers, {"scene_id": "sc1", "performer_id": "p1"}),
            ):
                left, right = list(table.columns)
                exists = db.execute(
                    select(left).where(left == row[left.name], right == row[right.name])
                ).first()
                if exists is None:
                    db.execute(insert(table).values(**row))

            # 4. Restriction rule for user 2
            set_restriction_rule(db, 2, EntityKind.tag, RuleMode.EXCLUDE, ["t123"])
    finally:
        db.close()

    print("Seeded catalog (t123, s9, sc1, p1) and users 1 (admin), 2 (EXCLUDE tag t123)")


if __name__ == "__main__":
    main()
