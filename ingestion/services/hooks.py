"""
Best-effort post-commit hooks.

Secondary updates that follow a primary decision (strategy usage after a
review, the review decision log, partner quality after a submission) must
never undo or fail that decision. They run after the surrounding
transaction commits; a failure is logged and sent to Sentry, then dropped.

Usage:
    with transaction.atomic():
        store.approve(entity_id, reviewer)
        after_commit("strategy_usage", registry.record_usage, strategy_id, success=True)
"""

import logging
from typing import Any, Callable

from django.db import transaction

from ingestion.monitoring import capture_ingestion_error

logger = logging.getLogger(__name__)


def run_best_effort(name: str, func: Callable, *args, **kwargs) -> Any:
    """
    Call func and swallow any exception after logging and reporting it.

    Returns:
        func's return value, or None when it raised
    """
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.warning(f"Best-effort hook '{name}' failed: {e}", exc_info=True)
        capture_ingestion_error(e, operation=name, extra_context={"hook": name})
        return None


def after_commit(name: str, func: Callable, *args, **kwargs) -> None:
    """
    Schedule func to run best-effort once the current transaction commits.

    Outside a transaction (autocommit) it runs immediately.
    """
    transaction.on_commit(lambda: run_best_effort(name, func, *args, **kwargs))
