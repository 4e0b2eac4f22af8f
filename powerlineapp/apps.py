# powerlineapp/apps.py
from django.apps import AppConfig


class PowerlineappConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "powerlineapp"
    verbose_name = "PowerLine"

    def ready(self):
        # ✅ Only load signals
        from . import signals  # noqa: F401
