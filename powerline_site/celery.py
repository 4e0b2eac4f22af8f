# powerline_site/celery.py
import os

from celery import Celery

# set default Django settings
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "powerline_site.settings")

app = Celery("powerline_site")

# Load settings from Django settings, CELERY_ namespace
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all installed apps
app.autodiscover_tasks()
