"""
App configuration for the backups app.
"""

from django.apps import AppConfig


class BackupsConfig(AppConfig):
    """Configuration for the backups app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.backups"
    verbose_name = "Backup & Restore"

    def ready(self):
        """
        Validate the backup configuration when the app is ready.

        A missing or invalid setting raises ``ImproperlyConfigured`` here, so no
        worker or command process starts accepting runs with a broken setup.
        """
        from .conf import validate_backup_settings

        validate_backup_settings()
