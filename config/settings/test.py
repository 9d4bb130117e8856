"""
Test settings for the Catalog Ingestion Service.

Uses a file-backed SQLite test database and eager Celery. The file lets
threaded tests open real concurrent connections; IMMEDIATE transactions make
writers wait for the database lock instead of failing.
"""

import os
import tempfile
from .base import *

# Test mode
DEBUG = False

ALLOWED_HOSTS = ["localhost", "127.0.0.1", "testserver"]

# Test database
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.path.join(tempfile.gettempdir(), "catalog_ingestion.sqlite3"),
        "OPTIONS": {
            "transaction_mode": "IMMEDIATE",
            "timeout": 30,
        },
        "TEST": {
            "NAME": os.path.join(tempfile.gettempdir(), "test_catalog_ingestion.sqlite3"),
        },
    }
}

# Test Cache - use local memory cache
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "unique-snowflake",
    }
}

# Test Celery - run tasks synchronously
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

# Test logging - minimal output
LOGGING["loggers"]["django"]["level"] = "WARNING"
LOGGING["loggers"]["ingestion"]["level"] = "WARNING"

# Password validators disabled for faster tests
AUTH_PASSWORD_VALIDATORS = []

# Use faster password hasher for tests
PASSWORD_HASHERS = [
    "django.contrib.auth.hashers.MD5PasswordHasher",
]

# Disable Sentry in tests
SENTRY_DSN = ""

# Fixed test budget
DAILY_BUDGET_LIMIT = 50.0
MONTHLY_BUDGET_LIMIT = 1000.0
BUDGET_THROTTLE_THRESHOLD = 0.8

# No external candidate service in tests
DISCOVERY_SOURCE_URL = ""
DISCOVERY_SCHEDULED_CONFIG = {}

RUN_STREAM_POLL_SECONDS = 0
RUN_STREAM_HEARTBEAT_SECONDS = 15
