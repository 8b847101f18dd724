"""
Tests for settings validation, write retries, logging and messages.
"""
import json
import logging
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from plan_limits.conftest import T0
from plan_limits.core.config import Settings, validate_config
from plan_limits.core.errors import StorageConflictError
from plan_limits.core.logging import JsonFormatter, evaluation_id_ctx_var
from plan_limits.core.metrics import METRICS, storage_retries_total
from plan_limits.core.retry import _compute_backoff, with_write_retry
from plan_limits.features.limits.messages import build_message, build_overage_message, time_until
from plan_limits.models.status import OverageItem


def _locked():
    return OperationalError("UPDATE plan_limit_usage_windows", {}, Exception("database is locked"))


def test_settings_helpers():
    cfg = Settings(DEFAULT_WARN_THRESHOLDS="0.9, 0.5", PLAN_RESOLUTION_ORDER="subscription, default")
    assert cfg.warn_thresholds() == [0.5, 0.9]
    assert cfg.resolution_order() == ["subscription", "default"]


def test_validate_config_warns_in_non_strict_mode(caplog):
    cfg = Settings(DATABASE_URL=None, PLAN_RESOLUTION_ORDER="assignment,coupon")
    with caplog.at_level(logging.WARNING):
        assert validate_config(strict=False, settings_obj=cfg) is False
    assert "Missing required configuration: DATABASE_URL" in caplog.text
    assert "Unknown plan resolution sources: coupon" in caplog.text


def test_validate_config_raises_in_strict_mode():
    cfg = Settings(DATABASE_URL="sqlite://", DEFAULT_WARN_THRESHOLDS="0.5,1.5")
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)


def test_validate_config_accepts_good_settings():
    cfg = Settings(DATABASE_URL="sqlite://")
    assert validate_config(strict=True, settings_obj=cfg) is True


def test_backoff_is_linear():
    assert [_compute_backoff(attempt, 0.1) for attempt in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.3])
    assert _compute_backoff(2, -1) == 0.0


def test_write_retry_recovers_from_transient_lock():
    METRICS.reset()
    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise _locked()
        return "ok"

    assert with_write_retry("usage_increment", flaky, max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append) == "ok"
    assert sleeps == [0.5, 1.0]
    assert storage_retries_total.value({"op": "usage_increment"}) == 2


def test_write_retry_escalates_after_budget():
    def always_locked():
        raise _locked()

    with pytest.raises(StorageConflictError) as excinfo:
        with_write_retry("mark_blocked", always_locked, max_attempts=2, backoff_seconds=0, sleep=lambda s: None)

    assert excinfo.value.attempts == 2
    assert excinfo.value.status_code == 503
    assert excinfo.value.code == "storage_conflict"


def test_write_retry_does_not_retry_other_errors():
    calls = []

    def broken():
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        with_write_retry("mark_exceeded", broken, max_attempts=3, sleep=lambda s: None)
    assert len(calls) == 1


def test_json_formatter_includes_evaluation_id_and_extras():
    token = evaluation_id_ctx_var.set("eval-123")
    try:
        record = logging.LogRecord("plan_limits.limits", logging.INFO, __file__, 1, "[limits] BLOCKED", None, None)
        record.evaluation_id = evaluation_id_ctx_var.get()
        record.limit_key = "seats"
        payload = json.loads(JsonFormatter().format(record))
    finally:
        evaluation_id_ctx_var.reset(token)

    assert payload["evaluation_id"] == "eval-123"
    assert payload["limit_key"] == "seats"
    assert payload["message"] == "[limits] BLOCKED"
    assert payload["level"] == "INFO"


# ---------- messages ----------

def test_default_messages():
    assert build_message("within", "api_calls", 10, 100, now=T0, remaining=90) == "90 api calls remaining"
    assert build_message("within", "notes", None, "unlimited", now=T0) == "Unlimited notes"
    assert build_message("at_limit", "seats", 3, 3, now=T0).startswith("You've reached your limit for seats (3/3)")
    assert build_message("over_limit", "seats", 3, 3, now=T0) == (
        "You've gone over your limit for seats (3/3). Please upgrade your plan."
    )
    grace = build_message("grace", "projects", 2, 1, T0 + timedelta(hours=5), now=T0, upgrade_plan="Pro Plan")
    assert "5 hours remaining" in grace
    assert grace.endswith("Upgrade to Pro Plan to avoid service interruption.")


def test_message_builder_override_and_fallback():
    seen = {}

    def builder(context, **kwargs):
        seen.update(kwargs, context=context)
        return "custom" if context == "over_limit" else None

    assert build_message("over_limit", "seats", 3, 3, now=T0, builder=builder) == "custom"
    assert seen["limit_key"] == "seats"
    assert seen["current_usage"] == 3
    assert seen["limit_amount"] == 3
    assert build_message("at_limit", "seats", 3, 3, now=T0, builder=builder).startswith("You've reached")


def test_message_builder_errors_fall_back():
    def builder(**kwargs):
        raise KeyError("template")

    assert build_message("within", "seats", 1, 3, now=T0, builder=builder, remaining=2) == "2 seats remaining"


def test_overage_message_with_builder():
    item = OverageItem(limit_key="seats", kind="persistent", usage=5, allowed=3, overage=2)
    assert build_overage_message([item], builder=lambda **kwargs: f"{len(kwargs['items'])} over") == "1 over"
    assert build_overage_message([item]) == "Over target plan on: seats: 5 > 3 (reduce by 2)."


@pytest.mark.parametrize("delta,expected", [
    (timedelta(seconds=30), "30 seconds"),
    (timedelta(minutes=10), "10 minutes"),
    (timedelta(hours=3), "3 hours"),
    (timedelta(days=2), "2 days"),
    (timedelta(seconds=-1), "no time"),
])
def test_time_until(delta, expected):
    assert time_until(T0 + delta, T0) == expected
