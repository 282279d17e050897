"""
Celery app initialization for the run_engine project.

Workers are started against this module (`celery -A CELERY_INIT worker`), and
task modules import `app` from here.
"""

import os
from celery import Celery

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'run_engine.settings')

app = Celery('run_engine')

# Load configuration from Django settings with CELERY namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks from all registered Django apps
app.autodiscover_tasks()
