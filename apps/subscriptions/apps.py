"""
Django app configuration for recurring subscription billing
"""

from django.apps import AppConfig


class SubscriptionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.subscriptions"
    verbose_name = "Subscriptions"

    def ready(self) -> None:
        """Import signals when the app is ready"""
        from . import signals  # noqa: F401, PLC0415
