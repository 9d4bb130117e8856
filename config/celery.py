"""
Celery configuration for the Catalog Ingestion Service.

This module configures Celery for asynchronous task processing with a
separate queue for discovery runs.
"""

import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("catalog_ingestion")

# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

app.conf.task_queues = {
    "discovery": {
        "exchange": "discovery",
        "routing_key": "discovery",
    },
    "default": {
        "exchange": "default",
        "routing_key": "default",
    },
}

app.conf.task_default_queue = "default"
app.conf.task_default_exchange = "default"
app.conf.task_default_routing_key = "default"

app.conf.task_routes = {
    "ingestion.tasks.run_discovery": {"queue": "discovery"},
    "ingestion.tasks.start_scheduled_discovery": {"queue": "default"},
    "ingestion.tasks.deprecate_underperforming_strategies": {"queue": "default"},
    "ingestion.tasks.promote_approved_entities": {"queue": "default"},
}

# Configure Celery Beat schedule for periodic tasks
app.conf.beat_schedule = {
    "start-scheduled-discovery-nightly": {
        "task": "ingestion.tasks.start_scheduled_discovery",
        "schedule": crontab(hour=2, minute=0),
    },
    "deprecate-underperforming-strategies-daily": {
        "task": "ingestion.tasks.deprecate_underperforming_strategies",
        "schedule": crontab(hour=4, minute=30),
    },
    "promote-approved-entities": {
        "task": "ingestion.tasks.promote_approved_entities",
        "schedule": crontab(minute="*/15"),
    },
}
