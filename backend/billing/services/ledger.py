"""Points ledger helpers providing credit/debit/forfeit operations with idempotency."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from billing.models import LedgerEntry, PointsBalance

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception type for ledger issues."""


class InsufficientFunds(LedgerError):
    """Raised when attempting to debit more points than available."""


class IdempotencyConflict(LedgerError):
    """Raised when an existing entry with the same reference conflicts with the requested mutation."""


class ConcurrentModification(LedgerError):
    """Raised when a racing writer made the atomic update fail; callers may retry once."""


@dataclass(frozen=True)
class LedgerResult:
    balance: PointsBalance
    entry: Optional[LedgerEntry]
    created: bool


def get_balance(user_id) -> PointsBalance:
    """Return the stored balance, or an unsaved zero balance for users who never paid."""

    balance = PointsBalance.objects.filter(user_id=user_id).first()
    if balance is None:
        return PointsBalance(user_id=user_id)
    return balance


def credit(
    user_id,
    amount: int,
    reason: str,
    external_reference: str,
    *,
    description: str = "",
    metadata: Optional[Dict[str, Any]] = None,
    recharge_amount: Optional[Decimal] = None,
) -> LedgerResult:
    """Credit points exactly once per ``external_reference``.

    A second call with a reference that is already in the ledger returns the current
    balance with ``created=False`` instead of raising.
    """

    if amount <= 0:
        raise ValueError("Amount must be a positive integer for credit operations.")
    if not external_reference:
        raise ValueError("External reference is required for credits.")

    try:
        with transaction.atomic():
            balance = _lock_balance(user_id, create=True)

            existing = LedgerEntry.objects.filter(external_reference=external_reference).first()
            if existing:
                _validate_existing(existing, user_id, amount)
                return LedgerResult(balance=balance, entry=existing, created=False)

            try:
                with transaction.atomic():
                    entry = LedgerEntry.objects.create(
                        user_id=user_id,
                        delta=amount,
                        reason=reason,
                        external_reference=external_reference,
                        balance_after=balance.available_points + amount,
                        description=description or "",
                        metadata=metadata or {},
                    )
            except IntegrityError:
                # Another writer inserted the same reference after our lookup.
                existing = LedgerEntry.objects.get(external_reference=external_reference)
                _validate_existing(existing, user_id, amount)
                return LedgerResult(balance=balance, entry=existing, created=False)

            updates = {
                "total_points": F("total_points") + amount,
                "available_points": F("available_points") + amount,
                "updated_at": timezone.now(),
            }
            if recharge_amount:
                updates["lifetime_recharge_amount"] = F("lifetime_recharge_amount") + recharge_amount
            PointsBalance.objects.filter(pk=balance.pk).update(**updates)
            balance.refresh_from_db()
    except OperationalError as exc:
        raise ConcurrentModification(str(exc)) from exc

    logger.info("Credited %s points to user %s (%s, ref=%s).", amount, user_id, reason, external_reference)
    return LedgerResult(balance=balance, entry=entry, created=True)


def debit(
    user_id,
    amount: int,
    reason: str = LedgerEntry.Reason.CONSUMPTION,
    *,
    description: str = "",
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Debit points with a single conditional update; raises ``InsufficientFunds``."""

    if amount <= 0:
        raise ValueError("Amount must be a positive integer for debit operations.")

    try:
        with transaction.atomic():
            updated = PointsBalance.objects.filter(
                user_id=user_id,
                available_points__gte=amount,
            ).update(
                available_points=F("available_points") - amount,
                used_points=F("used_points") + amount,
                updated_at=timezone.now(),
            )
            if not updated:
                raise InsufficientFunds("Points balance is insufficient for the requested debit.")

            balance = PointsBalance.objects.get(user_id=user_id)
            entry = LedgerEntry.objects.create(
                user_id=user_id,
                delta=-amount,
                reason=reason,
                balance_after=balance.available_points,
                description=description or "",
                metadata=metadata or {},
            )
    except OperationalError as exc:
        raise ConcurrentModification(str(exc)) from exc

    return LedgerResult(balance=balance, entry=entry, created=True)


def forfeit(
    user_id,
    *,
    external_reference: Optional[str] = None,
    description: str = "",
    limit: Optional[int] = None,
) -> LedgerResult:
    """Remove available points, recording them as expired.

    ``limit`` caps the forfeited amount (used for expired points packages); without it
    the whole available balance is zeroed. Must run inside the caller's transaction
    when it is a side effect of another state change.
    """

    with transaction.atomic():
        balance = _lock_balance(user_id, create=False)
        if balance is None:
            return LedgerResult(balance=PointsBalance(user_id=user_id), entry=None, created=False)

        if external_reference:
            existing = LedgerEntry.objects.filter(external_reference=external_reference).first()
            if existing:
                return LedgerResult(balance=balance, entry=existing, created=False)

        amount = balance.available_points if limit is None else min(limit, balance.available_points)
        if amount <= 0:
            return LedgerResult(balance=balance, entry=None, created=False)

        entry = LedgerEntry.objects.create(
            user_id=user_id,
            delta=-amount,
            reason=LedgerEntry.Reason.FORFEITURE,
            external_reference=external_reference,
            balance_after=balance.available_points - amount,
            description=description or "",
        )
        PointsBalance.objects.filter(pk=balance.pk).update(
            total_points=F("total_points") - amount,
            available_points=F("available_points") - amount,
            expired_points=F("expired_points") + amount,
            updated_at=timezone.now(),
        )
        balance.refresh_from_db()

    logger.info("Forfeited %s points from user %s.", amount, user_id)
    return LedgerResult(balance=balance, entry=entry, created=True)


def _validate_existing(entry: LedgerEntry, user_id, amount: int) -> None:
    if str(entry.user_id) != str(user_id):
        raise IdempotencyConflict("Existing ledger entry is tied to a different user.")
    if entry.delta != amount:
        raise IdempotencyConflict("Existing ledger entry amount does not match the request.")


def _lock_balance(user_id, *, create: bool) -> Optional[PointsBalance]:
    if create:
        PointsBalance.objects.get_or_create(user_id=user_id)
    return PointsBalance.objects.select_for_update().filter(user_id=user_id).first()
