"""
Tests for the warning / grace / block state machine.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from plan_limits.conftest import T0
from plan_limits.core.errors import ConfigurationError, StorageConflictError
from plan_limits.core.metrics import storage_retries_total
from plan_limits.features.enforcement.service import GraceManager
from plan_limits.features.events.service import BLOCK, GRACE_START, WARNING


def _types(events):
    return [event.type for event in events]


def test_no_state_means_within(engine, owner):
    grace = engine.grace
    assert grace.get_state(owner, "projects") is None
    assert grace.grace_active(owner, "projects") is False
    assert grace.grace_expired(owner, "projects") is False
    assert grace.grace_ends_at(owner, "projects") is None


def test_mark_exceeded_starts_grace_once(engine, owner, recorded_events):
    grace = engine.grace

    state = grace.mark_exceeded(owner, "projects")
    assert state.exceeded_at == T0
    assert state.blocked_at is None
    assert state.grace_ends_at == T0 + timedelta(days=7)
    assert state.data["grace_period"] == 7 * 24 * 3600

    again = grace.mark_exceeded(owner, "projects", now=T0 + timedelta(days=1))
    assert again.exceeded_at == T0

    assert _types(recorded_events) == [GRACE_START]
    assert recorded_events[0].grace_ends_at == T0 + timedelta(days=7)
    assert recorded_events[0].owner == owner


def test_concurrent_mark_exceeded_emits_one_event(engine, owner, recorded_events):
    grace = engine.grace
    workers = 6

    def exceed(_):
        return grace.mark_exceeded(owner, "projects", now=T0)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        states = list(pool.map(exceed, range(workers)))

    assert {state.id for state in states} == {states[0].id}
    assert {state.exceeded_at for state in states} == {T0}
    assert _types(recorded_events) == [GRACE_START]


def test_grace_boundary(engine, owner):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects", grace_period=timedelta(days=5), now=T0)
    ends = T0 + timedelta(days=5)

    assert grace.grace_ends_at(owner, "projects") == ends
    assert grace.grace_active(owner, "projects", now=ends - timedelta(seconds=1)) is True
    assert grace.grace_expired(owner, "projects", now=ends - timedelta(seconds=1)) is False
    assert grace.should_block(owner, "projects", now=ends - timedelta(seconds=1)) is False

    assert grace.grace_active(owner, "projects", now=ends) is False
    assert grace.grace_expired(owner, "projects", now=ends) is True
    assert grace.should_block(owner, "projects", now=ends) is True


def test_zero_grace_expires_immediately(engine, owner):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects", grace_period=timedelta(0), now=T0)
    assert grace.grace_active(owner, "projects", now=T0) is False
    assert grace.should_block(owner, "projects", now=T0) is True


def test_mark_blocked_once(engine, owner, recorded_events):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects", now=T0)

    first = grace.mark_blocked(owner, "projects", now=T0 + timedelta(days=8))
    second = grace.mark_blocked(owner, "projects", now=T0 + timedelta(days=9))

    assert first.blocked_at == T0 + timedelta(days=8)
    assert second.blocked_at == first.blocked_at
    assert second.exceeded_at == T0
    assert _types(recorded_events) == [GRACE_START, BLOCK]


def test_mark_blocked_backfills_exceeded_at(engine, owner, recorded_events):
    state = engine.grace.mark_blocked(owner, "seats", now=T0)
    assert state.exceeded_at == T0
    assert state.blocked_at == T0
    assert state.grace_active(T0) is False
    assert _types(recorded_events) == [BLOCK]


def test_should_block_by_policy(engine, owner):
    grace = engine.grace
    # block_usage: prospective usage over the amount
    assert grace.should_block(owner, "seats", usage=3, by=0) is False
    assert grace.should_block(owner, "seats", usage=3, by=1) is True
    # just_warn never blocks
    assert grace.should_block(owner, "notes", usage=50, by=1) is False
    # grace_then_block without an exceeded row
    assert grace.should_block(owner, "projects", usage=5, by=1) is False
    # unconfigured keys have a zero allowance
    assert grace.should_block(owner, "widgets", usage=0, by=1) is True
    assert grace.should_block(owner, "widgets", usage=0, by=0) is False


def test_warnings_are_monotonic(engine, owner, recorded_events):
    grace = engine.grace
    assert grace.maybe_emit_warning(owner, "projects", 0.8) is True
    assert grace.maybe_emit_warning(owner, "projects", 0.6) is False
    assert grace.maybe_emit_warning(owner, "projects", 0.8) is False
    assert grace.maybe_emit_warning(owner, "projects", 0.95) is True

    assert [event.threshold for event in recorded_events] == [0.8, 0.95]
    assert _types(recorded_events) == [WARNING, WARNING]
    state = grace.get_state(owner, "projects")
    assert state.last_warning_threshold == 0.95
    assert state.exceeded_at is None


@pytest.mark.parametrize("threshold", [0, -0.5, 1.5, "0.8", True])
def test_warning_threshold_validation(engine, owner, threshold):
    with pytest.raises(ConfigurationError):
        engine.grace.maybe_emit_warning(owner, "projects", threshold)


def test_periodic_state_resets_when_window_rolls(engine, owner, recorded_events):
    grace = engine.grace
    state = grace.mark_exceeded(owner, "reports", now=T0)
    assert state.data["window_start_epoch"] == int(datetime(2025, 1, 1, tzinfo=timezone.utc).timestamp())
    assert grace.grace_ends_at(owner, "reports", now=T0) == T0 + timedelta(days=2)

    february = datetime(2025, 2, 3, tzinfo=timezone.utc)
    assert grace.should_block(owner, "reports", usage=5, by=1, now=february) is False
    assert grace.get_state(owner, "reports", now=february) is None

    grace.mark_exceeded(owner, "reports", now=february)
    assert _types(recorded_events) == [GRACE_START, GRACE_START]


def test_warnings_rearm_in_new_window(engine, owner, recorded_events):
    grace = engine.grace
    assert grace.maybe_emit_warning(owner, "api_calls", 0.8, now=T0) is True
    assert grace.maybe_emit_warning(owner, "api_calls", 0.8, now=T0 + timedelta(days=3)) is False

    february = datetime(2025, 2, 10, tzinfo=timezone.utc)
    assert grace.maybe_emit_warning(owner, "api_calls", 0.8, now=february) is True
    assert len(recorded_events) == 2


def test_persistent_state_survives_month_change(engine, owner):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects", now=T0)
    later = T0 + timedelta(days=40)
    state = grace.get_state(owner, "projects", now=later)
    assert state is not None
    assert state.grace_expired(later)


def test_reset_deletes_state(engine, owner, recorded_events):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects")
    grace.mark_blocked(owner, "projects")

    assert grace.reset(owner, "projects") is True
    assert grace.get_state(owner, "projects") is None
    assert grace.reset(owner, "projects") is False

    grace.mark_exceeded(owner, "projects")
    assert _types(recorded_events) == [GRACE_START, BLOCK, GRACE_START]


def test_states_are_isolated_per_key(engine, owner):
    grace = engine.grace
    grace.mark_exceeded(owner, "projects")
    assert grace.get_state(owner, "reports") is None
    assert grace.get_state(("Organization", "someone-else"), "projects") is None


def test_write_conflicts_escalate_after_retries(engine, owner, recorded_events, monkeypatch):
    grace = GraceManager(engine.resolver, engine.periods, engine.events, clock=engine.clock, max_attempts=2, backoff_seconds=0)
    calls = []

    def locked(*args, **kwargs):
        calls.append(args)
        raise OperationalError("UPDATE plan_limit_enforcement_states", {}, Exception("database is locked"))

    monkeypatch.setattr(grace, "_fresh", locked)

    with pytest.raises(StorageConflictError) as excinfo:
        grace.mark_exceeded(owner, "projects")

    assert excinfo.value.operation == "mark_exceeded"
    assert excinfo.value.attempts == 2
    assert len(calls) == 2
    assert storage_retries_total.value({"op": "mark_exceeded"}) == 1
    assert recorded_events == []
