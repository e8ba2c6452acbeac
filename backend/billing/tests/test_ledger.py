from decimal import Decimal

import pytest
from django.core.exceptions import ValidationError

from billing.models import LedgerEntry, PointsBalance
from billing.services.ledger import (
    IdempotencyConflict,
    InsufficientFunds,
    credit,
    debit,
    forfeit,
    get_balance,
)


@pytest.mark.django_db
def test_repeated_credit_with_same_reference_applies_once(user):
    first = credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "sess_1")
    second = credit(user.pk, 680, LedgerEntry.Reason.RECHARGE, "sess_1")

    assert first.created is True
    assert second.created is False
    assert second.entry.pk == first.entry.pk

    balance = PointsBalance.objects.get(user=user)
    assert balance.available_points == 680
    assert balance.total_points == 680
    assert LedgerEntry.objects.filter(user=user).count() == 1


@pytest.mark.django_db
def test_credit_records_recharge_amount_and_balance_after(user):
    credit(user.pk, 100, LedgerEntry.Reason.RECHARGE, "sess_a", recharge_amount=Decimal("4.90"))
    result = credit(user.pk, 50, LedgerEntry.Reason.BONUS, "sess_a:bonus")

    assert result.entry.balance_after == 150
    assert result.balance.lifetime_recharge_amount == Decimal("4.90")


@pytest.mark.django_db
def test_credit_reference_reused_for_other_user_is_a_conflict(user, other_user):
    credit(user.pk, 100, LedgerEntry.Reason.RECHARGE, "sess_shared")

    with pytest.raises(IdempotencyConflict):
        credit(other_user.pk, 100, LedgerEntry.Reason.RECHARGE, "sess_shared")

    assert get_balance(other_user.pk).available_points == 0


@pytest.mark.django_db
def test_credit_requires_positive_amount_and_reference(user):
    with pytest.raises(ValueError):
        credit(user.pk, 0, LedgerEntry.Reason.RECHARGE, "sess_zero")
    with pytest.raises(ValueError):
        credit(user.pk, 10, LedgerEntry.Reason.RECHARGE, "")


@pytest.mark.django_db
def test_debit_updates_balance_and_appends_entry(user):
    credit(user.pk, 100, LedgerEntry.Reason.RECHARGE, "sess_debit")

    result = debit(user.pk, 30)

    assert result.balance.available_points == 70
    assert result.balance.used_points == 30
    assert result.balance.total_points == 100
    assert result.entry.delta == -30
    assert result.entry.reason == LedgerEntry.Reason.CONSUMPTION
    assert result.entry.balance_after == 70


@pytest.mark.django_db
def test_debit_without_balance_row_is_insufficient(user):
    with pytest.raises(InsufficientFunds):
        debit(user.pk, 10)

    assert not PointsBalance.objects.filter(user=user).exists()


@pytest.mark.django_db
def test_debits_against_k_minus_one_costs_allow_exactly_k_minus_one(user):
    cost = 10
    attempts = 5
    credit(user.pk, (attempts - 1) * cost, LedgerEntry.Reason.RECHARGE, "sess_k")

    successes = 0
    failures = 0
    for _ in range(attempts):
        try:
            debit(user.pk, cost)
        except InsufficientFunds:
            failures += 1
        else:
            successes += 1

    assert successes == attempts - 1
    assert failures == 1
    balance = get_balance(user.pk)
    assert balance.available_points == 0
    assert LedgerEntry.objects.filter(user=user, reason=LedgerEntry.Reason.CONSUMPTION).count() == attempts - 1


@pytest.mark.django_db
def test_forfeit_zeroes_available_and_tracks_expired(user):
    credit(user.pk, 500, LedgerEntry.Reason.RECHARGE, "sess_forfeit")
    debit(user.pk, 100)

    result = forfeit(user.pk, external_reference="forfeit:test")

    assert result.created is True
    assert result.entry.delta == -400
    assert result.entry.reason == LedgerEntry.Reason.FORFEITURE
    assert result.balance.available_points == 0
    assert result.balance.expired_points == 400
    assert result.balance.available_points == result.balance.total_points - result.balance.used_points

    again = forfeit(user.pk, external_reference="forfeit:test")
    assert again.created is False


@pytest.mark.django_db
def test_forfeit_with_limit_only_removes_that_many(user):
    credit(user.pk, 300, LedgerEntry.Reason.RECHARGE, "sess_limit")

    result = forfeit(user.pk, limit=120)

    assert result.balance.available_points == 180
    assert result.balance.expired_points == 120


@pytest.mark.django_db
def test_forfeit_on_empty_balance_writes_nothing(user):
    result = forfeit(user.pk)

    assert result.created is False
    assert result.entry is None
    assert LedgerEntry.objects.filter(user=user).count() == 0


@pytest.mark.django_db
def test_ledger_entries_are_immutable(user):
    entry = credit(user.pk, 10, LedgerEntry.Reason.RECHARGE, "sess_immutable").entry

    entry.delta = 20
    with pytest.raises(ValidationError):
        entry.save()
    with pytest.raises(ValidationError):
        entry.delete()
