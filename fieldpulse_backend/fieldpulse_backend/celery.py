import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'fieldpulse_backend.settings.base')

app = Celery('fieldpulse_backend')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()
