"""
Celery Configuration for UJANI
"""

import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'ujani_core.settings')

app = Celery('ujani_core')

# Load config from Django settings, using CELERY_ prefix
app.config_from_object('django.conf:settings', namespace='CELERY')

app.autodiscover_tasks()
