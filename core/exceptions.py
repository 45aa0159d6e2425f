"""Error taxonomy shared by the inventory and document services.

- ValidationError: malformed input, raised before any mutation (Django's own).
- ConflictError: a unit was not in the expected state when we tried to move it.
- AllocationFailed: ConflictError kept happening after the bounded retries.
- InsufficientStockError: a strict caller needed more units than exist.
- IllegalTransitionError: the requested state change is not in the table.
"""

from django.core.exceptions import ValidationError
from django_fsm import TransitionNotAllowed

__all__ = [
    "ValidationError",
    "ConflictError",
    "AllocationFailed",
    "InsufficientStockError",
    "IllegalTransitionError",
    "RateUnavailable",
]


class ConflictError(Exception):
    def __init__(self, message, *, unit_id=None, current_state=None):
        super().__init__(message)
        self.unit_id = unit_id
        self.current_state = current_state


class AllocationFailed(Exception):
    pass


class InsufficientStockError(Exception):
    def __init__(self, message, *, product_id=None, shortfall=0):
        super().__init__(message)
        self.product_id = product_id
        self.shortfall = shortfall


class IllegalTransitionError(TransitionNotAllowed):
    def __init__(self, message, *, obj=None, transition=None):
        super().__init__(message)
        self.obj = obj
        self.transition = transition


class RateUnavailable(ValueError):
    pass
