"""App configuration for the database analyst application."""

import logging
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class DbAnalystConfig(AppConfig):
    """Django app configuration for the database analyst application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "db_analyst"
    verbose_name = "Database Analyst"

    analyst_settings = None
    _storage = None

    def ready(self):
        """Resolve ``settings.DB_ANALYST`` once; a bad configuration stops startup."""
        from .conf import load_settings

        self.analyst_settings = load_settings()
        logger.info(
            f"db_analyst ready (validation mode: {self.analyst_settings.validation_mode}, "
            f"schemas: {', '.join(self.analyst_settings.allowed_schemas)})"
        )

    def get_storage(self):
        """Conversation storage shared by every connection of this process."""
        if self._storage is None:
            from .storage import get_conversation_storage

            self._storage = get_conversation_storage(self.analyst_settings)
        return self._storage
