"""Celery worker entrypoint.

Run with: celery -A apps.worker.main:celery_app worker -Q exclusions,default --loglevel=info

This module imports the Celery app and explicitly registers all tasks.
Task definitions are in shroud.tasks package - no autodiscovery.

Logging Convention:
- All task log entries include request_id, task_name, task_id when available
- Tasks accept `request_id: str | None = None` parameter for correlation
- Use configure_task_logging() at the start of each task to set up context

Queue Configuration:
- exclusions: Exclusion projection rebuilds
- default: General background tasks
"""

from celery.signals import worker_process_init

from shroud.celery import celery_app
from shroud.logging import configure_logging, get_logger

# =============================================================================
# Task Registration (explicit imports - no autodiscovery)
# =============================================================================

from shroud.tasks import recompute_exclusions  # noqa: F401

# =============================================================================
# Worker Lifecycle
# =============================================================================


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when worker process starts."""
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started", queue="exclusions")


# Export celery_app for Celery to find
# Command: celery -A apps.worker.main:celery_app worker ...
__all__ = ["celery_app"]
