"""
Celery configuration for the order-fulfillment project.

Celery only carries best-effort notifications; order jobs run on the
Redis-backed queue in ``modules.jobs``.  DJANGO_SETTINGS_MODULE is set
before the app is instantiated so Celery reads the Django settings
(``CELERY_`` prefix).
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("fulfillment")

# Reads Django settings with the CELERY_ prefix
app.config_from_object("django.conf:settings", namespace="CELERY")

# Discovers tasks.py in every installed app
app.autodiscover_tasks()
