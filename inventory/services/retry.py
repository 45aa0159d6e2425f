import logging

from django.db import transaction

from core.conf import get_setting
from core.exceptions import AllocationFailed, ConflictError

logger = logging.getLogger(__name__)


def with_conflict_retry(operation, *args, attempts=None, **kwargs):
    """Run ``operation`` in a savepoint, retrying when a unit moved under us.

    Each attempt starts from a clean savepoint, so a conflict halfway through
    a multi-unit allocation never leaves the first units applied.
    """
    attempts = attempts or get_setting("MAX_ALLOCATION_ATTEMPTS")
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                return operation(*args, **kwargs)
        except ConflictError as exc:
            last_error = exc
            logger.warning("Allocation conflict on attempt %s/%s: %s", attempt, attempts, exc)
    raise AllocationFailed(
        f"Allocation still conflicting after {attempts} attempts: {last_error}"
    ) from last_error
