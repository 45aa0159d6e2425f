"""Importa-ERP settings.

This project is intentionally **admin-only** (no custom views/templates).
The business rules live in service functions under each app's ``services``
package; the admin is the operator surface.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# NOTE: for development only. Replace in production.
SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me")

DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"

ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    "django_object_actions",

    "django.contrib.admin.apps.AdminConfig",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",

    "simple_history",
    "django_fsm",
    "django_fsm_log",

    # Local apps
    "core",
    "masterdata",
    "inventory",
    "documents",
    "ledger",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",

    # Records request.user on history rows
    "simple_history.middleware.HistoryRequestMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
        # Writers queue on the database lock instead of failing on it
        "OPTIONS": {"transaction_mode": "IMMEDIATE", "timeout": 20},
        # On disk so concurrent connections in tests see the same database
        "TEST": {"NAME": BASE_DIR / "test_db.sqlite3"},
    }
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "es-pe"
TIME_ZONE = "America/Lima"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        app: {"handlers": ["console"], "level": os.environ.get("APP_LOG_LEVEL", "INFO"), "propagate": False}
        for app in ("core", "masterdata", "inventory", "documents", "ledger")
    },
}

# Business policy. Every key is optional; defaults live in core.conf.DEFAULTS.
# Collaborators are dotted paths so another provider can be plugged in
# without touching the engine.
RETAIL_IMPORT = {
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
