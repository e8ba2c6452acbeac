import logging

from django.apps import AppConfig
from django.db.models.signals import post_migrate

logger = logging.getLogger(__name__)


def init_catalog_after_migrate(sender, **kwargs):
    """Called automatically after migrations to seed the plan and package catalog."""
    from .services.catalog import ensure_default_catalog

    result = ensure_default_catalog()
    if result["created"] or result["updated"]:
        logger.info("Billing catalog initialised. created=%s updated=%s", result["created"], result["updated"])


class BillingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'billing'

    def ready(self):
        # Connect signal so the catalog is refreshed after every migrate run
        post_migrate.connect(init_catalog_after_migrate, sender=self)
