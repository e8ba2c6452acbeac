"""Management command to replay payments that could not be applied."""
from __future__ import annotations

from typing import Iterable, Optional

from django.core.management.base import BaseCommand
from django.utils import timezone

from billing.models import PaymentInconsistency
from billing.services.reconciler import ReconciliationResult, replay_inconsistency


class Command(BaseCommand):
    help = "Replay recorded payment inconsistencies through the reconciler once the catalog or user data is fixed."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--reference",
            dest="references",
            action="append",
            help="Replay only the given external reference (Checkout Session or invoice id). Can be supplied multiple times.",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum number of inconsistencies to replay in this run.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Preview inconsistencies that would be replayed without performing any changes.",
        )

    def handle(self, *args, **options) -> None:
        references: Optional[Iterable[str]] = options.get("references")
        limit: Optional[int] = options.get("limit")
        dry_run: bool = options.get("dry_run")

        queryset = PaymentInconsistency.objects.order_by("created_at")
        if references:
            queryset = queryset.filter(external_reference__in=list(references))

        if limit is not None:
            queryset = queryset[:limit]

        inconsistencies = list(queryset)
        total = len(inconsistencies)
        if total == 0:
            self.stdout.write(self.style.WARNING("No payment inconsistencies matched the requested filters."))
            return

        resolved = 0
        failed = 0

        for inconsistency in inconsistencies:
            self.stdout.write(f"Replaying {inconsistency.external_reference} ({inconsistency.reason})")
            if dry_run:
                continue

            result = replay_inconsistency(inconsistency)
            if result.status in {ReconciliationResult.APPLIED, ReconciliationResult.DUPLICATE}:
                # A successful reconcile already removed the row; renewals are cleaned up here.
                PaymentInconsistency.objects.filter(pk=inconsistency.pk).delete()
                resolved += 1
            else:
                failed += 1
                PaymentInconsistency.objects.filter(pk=inconsistency.pk).update(last_attempt_at=timezone.now())
                self.stdout.write(self.style.ERROR(f"  still failing: {result.detail or result.status}"))

        if dry_run:
            self.stdout.write(self.style.WARNING(f"Dry run complete. {total} inconsistencies would be replayed."))
            return

        self.stdout.write(self.style.SUCCESS(f"Replay complete. Resolved={resolved} Failed={failed}"))
