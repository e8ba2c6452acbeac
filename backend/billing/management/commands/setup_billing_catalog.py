"""
Create or refresh the subscription plans and points packages declared in settings.
"""

from django.core.management.base import BaseCommand, CommandError

from billing.models import PointsPackage, SubscriptionPlan
from billing.services.catalog import CatalogConfigurationError, ensure_default_catalog


class Command(BaseCommand):

    help = 'Create or update the billing catalog from BILLING_SUBSCRIPTION_PLANS and BILLING_POINTS_PACKAGES'

    def handle(self, *args, **options):
        try:
            result = ensure_default_catalog()
        except CatalogConfigurationError as exc:
            raise CommandError(str(exc)) from exc

        for key in result['created']:
            self.stdout.write(self.style.SUCCESS(f'Created: {key}'))
        for key in result['updated']:
            self.stdout.write(self.style.SUCCESS(f'Updated: {key}'))
        if not result['created'] and not result['updated']:
            self.stdout.write(self.style.WARNING('Catalog already up to date.'))

        self.stdout.write('\nCurrent plans:')
        for plan in SubscriptionPlan.objects.filter(is_active=True).order_by('sort_order', 'price'):
            self.stdout.write(f"  {plan.key}: {plan.price} {plan.currency}/{plan.duration_unit} -> {plan.points} points")

        self.stdout.write('\nCurrent points packages:')
        for package in PointsPackage.objects.filter(is_active=True).order_by('sort_order', 'price'):
            self.stdout.write(
                f"  {package.key}: {package.price} {package.currency} -> "
                f"{package.points} + {package.bonus_points} bonus points ({package.validity_days} days)"
            )
