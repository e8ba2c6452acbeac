from datetime import date, timedelta

import pytest

from billing.models import DailyQuota
from billing.services.quota import record_usage, remaining_free_uses, try_consume_free


@pytest.mark.django_db
def test_first_use_creates_row_with_full_allowance_minus_one(user):
    result = try_consume_free(user.pk)

    assert result.exhausted is False
    assert result.remaining == 9
    assert result.total_uses == 1
    row = DailyQuota.objects.get(user=user)
    assert row.free_uses_remaining == 9
    assert row.total_uses == 1


@pytest.mark.django_db
def test_allowance_is_exhausted_after_ten_uses_and_never_negative(user):
    results = [try_consume_free(user.pk) for _ in range(11)]

    assert [r.exhausted for r in results[:10]] == [False] * 10
    assert results[9].remaining == 0
    assert results[10].exhausted is True

    row = DailyQuota.objects.get(user=user)
    assert row.free_uses_remaining == 0
    # Denied attempts are not counted as uses.
    assert row.total_uses == 10


@pytest.mark.django_db
def test_each_day_gets_its_own_allowance(user):
    today = date(2026, 3, 1)
    for _ in range(10):
        try_consume_free(user.pk, today=today)

    assert try_consume_free(user.pk, today=today).exhausted is True
    assert try_consume_free(user.pk, today=today + timedelta(days=1)).remaining == 9
    assert DailyQuota.objects.filter(user=user).count() == 2


@pytest.mark.django_db
def test_details_are_appended_to_call_log(user):
    try_consume_free(user.pk, details={"prompt": "a red fox", "image_url": ""})
    record_usage(user.pk, {"prompt": "a blue fox", "source": "points"})

    log = DailyQuota.objects.get(user=user).call_log
    assert len(log) == 2
    assert log[0]["prompt"] == "a red fox"
    assert "image_url" not in log[0]
    assert log[1]["source"] == "points"
    assert "timestamp" in log[1]


@pytest.mark.django_db
def test_remaining_free_uses_does_not_consume(user):
    assert remaining_free_uses(user.pk) == 10
    assert not DailyQuota.objects.filter(user=user).exists()
