import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from django.db import connections

from billing.models import LedgerEntry
from billing.services.consumption import consume
from billing.services.ledger import credit, get_balance

WORKERS = 6


def _race(func, count=WORKERS):
    """Run ``func`` from ``count`` threads released together; each thread uses its own connection."""

    barrier = threading.Barrier(count)

    def worker():
        try:
            barrier.wait(timeout=10)
            return func()
        finally:
            connections.close_all()

    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(worker) for _ in range(count)]
        return [future.result() for future in futures]


@pytest.mark.django_db(transaction=True)
def test_concurrent_consumes_spend_exactly_the_balance(user):
    cost = 10
    credit(user.pk, (WORKERS - 1) * cost, LedgerEntry.Reason.RECHARGE, "cs_race_consume")

    results = _race(lambda: consume(user.pk, cost))

    sources = sorted(result.source for result in results)
    # The one that lost the race falls back to the free allowance.
    assert sources == ["free"] + ["points"] * (WORKERS - 1)
    balance = get_balance(user.pk)
    assert balance.available_points == 0
    assert balance.used_points == (WORKERS - 1) * cost
    assert LedgerEntry.objects.filter(user=user, reason=LedgerEntry.Reason.CONSUMPTION).count() == WORKERS - 1


@pytest.mark.django_db(transaction=True)
def test_concurrent_credits_with_one_reference_apply_once(user):
    results = _race(lambda: credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "cs_race_credit"))

    assert sum(1 for result in results if result.created) == 1
    assert LedgerEntry.objects.filter(external_reference="cs_race_credit").count() == 1
    balance = get_balance(user.pk)
    assert balance.available_points == 680
    assert balance.total_points == 680
