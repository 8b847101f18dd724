"""
Tests for allowance window calculation.
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from plan_limits.core.errors import ConfigurationError
from plan_limits.features.billing.provider import StaticSubscriptionProvider, SubscriptionSnapshot
from plan_limits.features.periods.service import PeriodCalculator, monthly_window_from
from plan_limits.models.owner import OwnerRef

UTC = timezone.utc
OWNER = OwnerRef(owner_type="Organization", owner_id="org-1")


def dt(*args):
    return datetime(*args, tzinfo=UTC)


def test_calendar_month_window_is_half_open():
    calc = PeriodCalculator()
    start, end = calc.window_for(OWNER, "calendar_month", now=dt(2025, 2, 14, 9, 30))
    assert start == dt(2025, 2, 1)
    assert end == dt(2025, 3, 1)


def test_month_alias_matches_calendar_month():
    calc = PeriodCalculator()
    now = dt(2024, 12, 31, 23, 59)
    assert calc.window_for(OWNER, "month", now=now) == (dt(2024, 12, 1), dt(2025, 1, 1))


def test_calendar_week_starts_monday():
    calc = PeriodCalculator()
    # 2025-01-15 is a Wednesday
    start, end = calc.window_for(OWNER, "week", now=dt(2025, 1, 15, 18))
    assert start == dt(2025, 1, 13)
    assert end == dt(2025, 1, 20)
    assert start.weekday() == 0


def test_calendar_day_window():
    calc = PeriodCalculator()
    assert calc.window_for(OWNER, "calendar_day", now=dt(2025, 1, 15, 18)) == (dt(2025, 1, 15), dt(2025, 1, 16))


def test_duration_window_starts_at_beginning_of_day():
    calc = PeriodCalculator()
    start, end = calc.window_for(OWNER, timedelta(days=14), now=dt(2025, 1, 15, 18))
    assert start == dt(2025, 1, 15)
    assert end == dt(2025, 1, 29)


def test_duration_string_is_parsed():
    calc = PeriodCalculator()
    assert calc.window_for(OWNER, "2 weeks", now=dt(2025, 1, 15, 18)) == (dt(2025, 1, 15), dt(2025, 1, 29))
    assert calc.window_for(OWNER, "12 hours", now=dt(2025, 1, 15, 18)) == (dt(2025, 1, 15), dt(2025, 1, 15, 12))


def test_naive_now_is_treated_as_utc():
    calc = PeriodCalculator()
    start, _ = calc.window_for(OWNER, "day", now=datetime(2025, 1, 15, 18))
    assert start == dt(2025, 1, 15)


def test_clock_is_used_when_now_omitted():
    calc = PeriodCalculator(clock=lambda: dt(2025, 6, 10, 1))
    assert calc.window_for(OWNER, "month") == (dt(2025, 6, 1), dt(2025, 7, 1))


def test_billing_cycle_without_provider_falls_back_to_calendar_month():
    calc = PeriodCalculator()
    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 14)) == (dt(2025, 2, 1), dt(2025, 3, 1))


def test_billing_cycle_without_subscription_falls_back_to_calendar_month():
    calc = PeriodCalculator(subscription_provider=StaticSubscriptionProvider())
    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 14)) == (dt(2025, 2, 1), dt(2025, 3, 1))


def test_billing_cycle_uses_subscription_anchors_verbatim():
    provider = StaticSubscriptionProvider()
    provider.set(OWNER, SubscriptionSnapshot(
        status="active",
        current_period_start=dt(2025, 2, 7, 10),
        current_period_end=dt(2025, 3, 7, 10),
    ))
    calc = PeriodCalculator(subscription_provider=provider)
    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 14)) == (dt(2025, 2, 7, 10), dt(2025, 3, 7, 10))


def test_billing_cycle_ignores_inactive_subscription():
    provider = StaticSubscriptionProvider()
    provider.set(OWNER, SubscriptionSnapshot(
        status="canceled",
        current_period_start=dt(2025, 2, 7),
        current_period_end=dt(2025, 3, 7),
    ))
    calc = PeriodCalculator(subscription_provider=provider)
    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 14)) == (dt(2025, 2, 1), dt(2025, 3, 1))


def test_billing_cycle_rolls_monthly_from_creation_date():
    provider = StaticSubscriptionProvider()
    provider.set(OWNER, SubscriptionSnapshot(status="trialing", created_at=dt(2024, 11, 20, 8)))
    calc = PeriodCalculator(subscription_provider=provider)

    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 25)) == (dt(2025, 2, 20, 8), dt(2025, 3, 20, 8))
    # Before the anchor day the window started last month
    assert calc.window_for(OWNER, "billing_cycle", now=dt(2025, 2, 5)) == (dt(2025, 1, 20, 8), dt(2025, 2, 20, 8))


def test_monthly_window_clamps_day_31_anchor_to_short_months():
    anchor = dt(2025, 1, 31)
    assert monthly_window_from(anchor, dt(2025, 2, 28, 12)) == (dt(2025, 2, 28), dt(2025, 3, 31))
    assert monthly_window_from(anchor, dt(2025, 3, 1)) == (dt(2025, 2, 28), dt(2025, 3, 31))
    assert monthly_window_from(anchor, dt(2025, 4, 30, 1)) == (dt(2025, 4, 30), dt(2025, 5, 31))


def test_monthly_window_boundary_belongs_to_next_window():
    anchor = dt(2025, 1, 10)
    assert monthly_window_from(anchor, dt(2025, 2, 10)) == (dt(2025, 2, 10), dt(2025, 3, 10))


def test_custom_callable_window():
    calc = PeriodCalculator()
    window = calc.window_for(OWNER, lambda owner: (dt(2025, 1, 1), dt(2025, 4, 1)), now=dt(2025, 2, 1))
    assert window == (dt(2025, 1, 1), dt(2025, 4, 1))


def test_custom_callable_accepts_dates():
    calc = PeriodCalculator()
    window = calc.window_for(OWNER, lambda owner: [date(2025, 1, 1), date(2025, 2, 1)], now=dt(2025, 1, 5))
    assert window == (dt(2025, 1, 1), dt(2025, 2, 1))


def test_custom_callable_receives_owner():
    seen = []

    def window(owner):
        seen.append(owner)
        return dt(2025, 1, 1), dt(2025, 2, 1)

    PeriodCalculator().window_for(OWNER, window, now=dt(2025, 1, 5))
    assert seen == [OWNER]


@pytest.mark.parametrize("result", [
    (dt(2025, 2, 1), dt(2025, 1, 1)),
    (dt(2025, 1, 1), dt(2025, 1, 1)),
    (dt(2025, 1, 1),),
    "2025-01-01",
    ("2025-01-01", "2025-02-01"),
    None,
])
def test_custom_callable_invalid_results_raise(result):
    calc = PeriodCalculator()
    with pytest.raises(ConfigurationError):
        calc.window_for(OWNER, lambda owner: result, now=dt(2025, 1, 5))


@pytest.mark.parametrize("period", ["fortnightly", 42, object(), timedelta(0)])
def test_unknown_period_raises_configuration_error(period):
    calc = PeriodCalculator()
    with pytest.raises(ConfigurationError):
        calc.window_for(OWNER, period, now=dt(2025, 1, 5))


def test_none_period_uses_default_period():
    calc = PeriodCalculator(default_period="calendar_day")
    assert calc.window_for(OWNER, None, now=dt(2025, 1, 15, 18)) == (dt(2025, 1, 15), dt(2025, 1, 16))


def test_provider_errors_propagate():
    class BrokenProvider:
        def current_subscription(self, owner):
            raise RuntimeError("billing down")

    calc = PeriodCalculator(subscription_provider=BrokenProvider())
    with pytest.raises(RuntimeError):
        calc.window_for(OWNER, "billing_cycle", now=dt(2025, 1, 5))
