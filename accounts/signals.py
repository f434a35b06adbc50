from django.db.models.signals import post_migrate
from django.dispatch import receiver
import logging

logger = logging.getLogger("accounts")

DEFAULT_ROLES = [
    {"name": "admin", "description": "Marketplace administrator with full access"},
    {"name": "buyer", "description": "Buyer who books and purchases vehicles"},
    {"name": "seller", "description": "Seller who lists vehicles and confirms manual payments"},
]


@receiver(post_migrate)
def create_default_roles(sender, **kwargs):
    """
    Create the marketplace roles after the accounts app is migrated.
    """
    if sender.name != "accounts":
        return

    from .models import Role

    for role_data in DEFAULT_ROLES:
        _, created = Role.objects.get_or_create(
            name=role_data["name"],
            defaults={"description": role_data["description"]},
        )
        if created:
            logger.info(f"Created default role: {role_data['name']}")
