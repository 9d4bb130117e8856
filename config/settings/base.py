"""
Django base settings for the Catalog Ingestion Service.

This module contains settings common to all environments.
For more information on this file, see
https://docs.djangoproject.com/en/5.1/topics/settings/
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv(
    "SECRET_KEY",
    "django-insecure-ingestion-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = os.getenv("DEBUG", "True") == "True"

ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")


# Application definition

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party apps
    "rest_framework",
    "drf_spectacular",
    # Local apps
    "ingestion",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
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
    },
]

WSGI_APPLICATION = "config.wsgi.application"


# Database
# Configured in environment-specific settings (development.py, production.py, test.py)

DATABASES = {
    # Override in environment-specific settings
}


# Password validation

AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]


# Internationalization

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = True

USE_TZ = True


# Static files (CSS, JavaScript, Images)

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# Redis Cache Configuration
# Configured in environment-specific settings

CACHES = {
    # Override in environment-specific settings
}


# Celery Configuration
# https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/1")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 60 * 60  # 1 hour max for a discovery run

# Task routing - discovery runs get their own queue
CELERY_TASK_ROUTES = {
    "ingestion.tasks.run_discovery": {"queue": "discovery"},
    "ingestion.tasks.start_scheduled_discovery": {"queue": "default"},
    "ingestion.tasks.deprecate_underperforming_strategies": {"queue": "default"},
}


# Django REST Framework Configuration
# https://www.django-rest-framework.org/

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 100,
    "EXCEPTION_HANDLER": "ingestion.api.exceptions.ingestion_exception_handler",
}


# DRF Spectacular (OpenAPI/Swagger) Configuration

SPECTACULAR_SETTINGS = {
    "TITLE": "Catalog Ingestion Service API",
    "DESCRIPTION": "Staging, review and partner intake for the product and venue catalog",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
}


# Logging Configuration

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
        "ingestion": {
            "handlers": ["console"],
            "level": os.getenv("LOG_LEVEL", "INFO"),
        },
    },
}


# Sentry Configuration
# https://docs.sentry.io/platforms/python/integrations/django/

SENTRY_DSN = os.getenv("SENTRY_DSN", "")
SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2"))
SENTRY_PROFILE_SAMPLE_RATE = float(os.getenv("SENTRY_PROFILE_SAMPLE_RATE", "0.0"))

if SENTRY_DSN:
    import sentry_sdk

    from ingestion.monitoring import before_send

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        send_default_pii=False,
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        profiles_sample_rate=SENTRY_PROFILE_SAMPLE_RATE,
        environment=SENTRY_ENVIRONMENT,
        before_send=before_send,
    )


# Query cache

INGESTION_CACHE_ALIAS = os.getenv("INGESTION_CACHE_ALIAS", "default")
INGESTION_CACHE_TTL = int(os.getenv("INGESTION_CACHE_TTL", "300"))


# Budget Configuration (USD)

DAILY_BUDGET_LIMIT = float(os.getenv("DAILY_BUDGET_LIMIT", "50"))
MONTHLY_BUDGET_LIMIT = float(os.getenv("MONTHLY_BUDGET_LIMIT", "1000"))

# Fraction of a limit at which new runs are refused
BUDGET_THROTTLE_THRESHOLD = float(os.getenv("BUDGET_THROTTLE_THRESHOLD", "0.8"))
BUDGET_RETRY_AFTER_SECONDS = int(os.getenv("BUDGET_RETRY_AFTER_SECONDS", "3600"))

# Overrides for the per-operation costs in ingestion.services.budget
BUDGET_UNIT_COSTS = {}


# Staging Configuration

STAGING_DEFAULT_AUTO_APPROVE_THRESHOLD = int(os.getenv("STAGING_DEFAULT_AUTO_APPROVE_THRESHOLD", "85"))
STAGING_AUTO_REJECT_THRESHOLD = int(os.getenv("STAGING_AUTO_REJECT_THRESHOLD", "25"))
BULK_REVIEW_LIMIT = 100


# Partner Configuration

PARTNER_CREDENTIAL_GRACE_HOURS = int(os.getenv("PARTNER_CREDENTIAL_GRACE_HOURS", "24"))
PARTNER_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("PARTNER_WEBHOOK_TOLERANCE_SECONDS", "300"))


# Discovery Configuration

DISCOVERY_CANDIDATE_SOURCE = os.getenv(
    "DISCOVERY_CANDIDATE_SOURCE",
    "ingestion.services.discovery_runner.HttpCandidateSource",
)
DISCOVERY_SOURCE_URL = os.getenv("DISCOVERY_SOURCE_URL", "")
DISCOVERY_SOURCE_API_KEY = os.getenv("DISCOVERY_SOURCE_API_KEY", "")
DISCOVERY_SOURCE_TIMEOUT = int(os.getenv("DISCOVERY_SOURCE_TIMEOUT", "60"))
DISCOVERY_AI_CALLS_PER_QUERY = int(os.getenv("DISCOVERY_AI_CALLS_PER_QUERY", "2"))

# Config for the periodic discovery run, empty disables it
DISCOVERY_SCHEDULED_CONFIG = {}

STRATEGY_DEPRECATION_MIN_USES = int(os.getenv("STRATEGY_DEPRECATION_MIN_USES", "10"))
STRATEGY_DEPRECATION_MAX_SUCCESS_RATE = int(os.getenv("STRATEGY_DEPRECATION_MAX_SUCCESS_RATE", "20"))


# Run event stream (Server-Sent Events)

RUN_STREAM_POLL_SECONDS = float(os.getenv("RUN_STREAM_POLL_SECONDS", "1.0"))
RUN_STREAM_HEARTBEAT_SECONDS = float(os.getenv("RUN_STREAM_HEARTBEAT_SECONDS", "15"))
