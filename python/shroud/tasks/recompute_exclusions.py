"""Celery tasks that rebuild the SQL exclusion projection.

Workers do not share the API process's exclusion cache. Each run loads the
catalog into a private graph registry, computes exclusions from the rule
tables and replaces the affected users' ``excluded_entities`` and
``user_entity_stats`` rows.

The plain ``run_*`` functions carry the logic and take a session factory so
they can be called without a broker.
"""

from sqlalchemy.orm import Session, sessionmaker

from shroud.celery import celery_app
from shroud.config import get_settings
from shroud.db.session import get_session_factory, transaction
from shroud.errors import ExclusionError
from shroud.logging import (
    clear_task_context,
    configure_task_logging,
    get_logger,
    set_sync_version,
)
from shroud.services.catalog import publish_catalog_snapshot
from shroud.services.projection import write_exclusion_projection
from shroud.services.rules import SqlRuleStore
from shroud.services.visibility.computer import DEFAULT_RETRY_DELAYS_S, ExclusionComputer
from shroud.services.visibility.registry import GraphRegistry
from shroud.services.visibility.state import ExclusionSet

logger = get_logger(__name__)


def _load_computer(
    session_factory: sessionmaker[Session], retry_delays: tuple[float, ...]
) -> tuple[ExclusionComputer, SqlRuleStore, int]:
    registry = GraphRegistry()
    db = session_factory()
    try:
        version = publish_catalog_snapshot(db, registry)
    finally:
        db.close()
    set_sync_version(version)
    rule_store = SqlRuleStore(session_factory)
    return ExclusionComputer(registry, rule_store, retry_delays), rule_store, version


def _write_projection(session_factory: sessionmaker[Session], exclusions: ExclusionSet) -> int:
    db = session_factory()
    try:
        with transaction(db):
            return write_exclusion_projection(db, exclusions)
    finally:
        db.close()


def run_user_recompute(
    session_factory: sessionmaker[Session],
    user_id: int,
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS_S,
) -> dict:
    """Recompute one user against the current catalog and persist the projection.

    Raises:
        ExclusionError: If the rules could not be read after retries.
    """
    computer, _, version = _load_computer(session_factory, retry_delays)
    exclusions = computer.compute_full(user_id)
    written = _write_projection(session_factory, exclusions)
    return {
        "status": "completed",
        "user_id": user_id,
        "graph_version": version,
        "excluded": written,
    }


def run_all_recompute(
    session_factory: sessionmaker[Session],
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS_S,
) -> dict:
    """Recompute every user against one catalog snapshot. Failures are per user."""
    computer, rule_store, version = _load_computer(session_factory, retry_delays)

    success = 0
    errors: list[str] = []
    for user_id in rule_store.list_user_ids():
        try:
            exclusions = computer.compute_full(user_id)
            _write_projection(session_factory, exclusions)
        except ExclusionError as exc:
            logger.warning("exclusion_recompute_user_failed", user_id=user_id, error=str(exc))
            errors.append(f"user {user_id}: {exc}")
            continue
        success += 1

    logger.info(
        "exclusion_recompute_all_completed",
        graph_version=version,
        success=success,
        failed=len(errors),
    )
    return {
        "status": "completed",
        "graph_version": version,
        "success": success,
        "failed": len(errors),
        "errors": errors,
    }


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30, name="recompute_user_exclusions")
def recompute_user_exclusions(self, user_id: int, request_id: str | None = None) -> dict:
    """Rebuild one user's exclusion projection.

    Args:
        user_id: User whose exclusions to rebuild.
        request_id: Optional correlation ID for logging.

    Returns:
        Dict with the graph version and number of excluded entities.
    """
    configure_task_logging(
        request_id=request_id, task_name="recompute_user_exclusions", task_id=self.request.id
    )
    try:
        logger.info("exclusion_task_started", user_id=user_id)
        result = run_user_recompute(
            get_session_factory(), user_id, retry_delays=get_settings().retry_delays
        )
        logger.info("exclusion_task_completed", **result)
        return result
    except ExclusionError as exc:
        logger.warning("exclusion_task_failed", user_id=user_id, error=str(exc))
        raise self.retry(exc=exc) from exc
    finally:
        clear_task_context()


@celery_app.task(bind=True, name="recompute_all_exclusions")
def recompute_all_exclusions(self, request_id: str | None = None) -> dict:
    """Rebuild every user's exclusion projection."""
    configure_task_logging(
        request_id=request_id, task_name="recompute_all_exclusions", task_id=self.request.id
    )
    try:
        return run_all_recompute(get_session_factory(), retry_delays=get_settings().retry_delays)
    finally:
        clear_task_context()
