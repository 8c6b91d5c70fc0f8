"""Celery application configuration.

Central configuration for Celery used by both API (for enqueuing)
and worker (for executing tasks).

Usage:
    from shroud.celery import celery_app

    # Enqueue task:
    celery_app.send_task("recompute_user_exclusions", args=[user_id])

    # Or import task directly:
    from shroud.tasks import recompute_user_exclusions
    recompute_user_exclusions.apply_async(args=[user_id], queue="exclusions")
"""

from celery import Celery

from shroud.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery("shroud")

# Configure from settings
celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Queue routing for exclusion recomputes
celery_app.conf.task_routes = {
    "recompute_user_exclusions": {"queue": "exclusions"},
    "recompute_all_exclusions": {"queue": "exclusions"},
}

# Default queue
celery_app.conf.task_default_queue = "default"

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False
