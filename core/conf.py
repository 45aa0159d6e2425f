"""Policy settings and pluggable collaborators.

Values are read from ``settings.RETAIL_IMPORT`` and fall back to ``DEFAULTS``.
Collaborators (rate provider, payment ledger, requirement service) are
configured as dotted paths and resolved on every call, so tests and
deployments can swap them through settings alone.
"""

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string

DEFAULTS = {
    "BASE_CURRENCY": "PEN",
    "NEW_QUOTATION_VIGENCY_DAYS": 7,
    "VALIDATED_VIGENCY_DAYS": 7,
    "ADVANCE_PAYMENT_DEADLINE_DAYS": 3,
    "ADVANCE_PAID_VIGENCY_DAYS": 90,
    "VIRTUAL_RESERVATION_ETA_DAYS": 30,
    "MAX_ALLOCATION_ATTEMPTS": 3,
    "MAX_RESERVATION_EXTENSIONS": 3,
    "EXCHANGE_RATE_PROVIDER": "core.services.fx.get_rate_for_today",
    "PAYMENT_LEDGER": "ledger.services.movements.record_movement",
    "REQUIREMENT_SERVICE": "documents.services.requirements.create_from_shortfall",
}


def get_setting(name: str):
    if name not in DEFAULTS:
        raise ImproperlyConfigured(f"Unknown RETAIL_IMPORT setting: {name}")
    overrides = getattr(settings, "RETAIL_IMPORT", None) or {}
    return overrides.get(name, DEFAULTS[name])


def get_collaborator(name: str):
    """Import the callable configured under ``name``."""
    path = get_setting(name)
    if callable(path):
        return path
    return import_string(path)
