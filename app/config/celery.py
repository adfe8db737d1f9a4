"""
Celery configuration for the Django application.

Celery runs the periodic chat maintenance tasks:
- chat.tasks.sweep_stale_sessions: marks users offline whose sockets
  stopped sending heartbeats (schedule in CELERY_BEAT_SCHEDULE)

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps.

Usage:
    # Run a worker with the beat scheduler:
    celery -A config worker -B -l info

    # Trigger a sweep by hand:
    from chat.tasks import sweep_stale_sessions
    sweep_stale_sessions.delay()

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Create Celery application instance
# The name should match the Django project name
app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all registered Django apps
# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
