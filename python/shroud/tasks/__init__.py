"""Celery tasks for Shroud.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in API (enqueue):
    from shroud.tasks import recompute_user_exclusions
    recompute_user_exclusions.apply_async(
        args=[user_id],
        kwargs={"request_id": request_id},
        queue="exclusions",
    )
"""

from shroud.tasks.recompute_exclusions import (
    recompute_all_exclusions,
    recompute_user_exclusions,
)

__all__ = ["recompute_all_exclusions", "recompute_user_exclusions"]
