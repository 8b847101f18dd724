"""
Tests for windowed usage counters and live counters.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table

from plan_limits.conftest import projects, seats
from plan_limits.core.errors import ConfigurationError
from plan_limits.features.usage.counters import CounterRegistry, FunctionCounter, TableCounter
from plan_limits.features.usage.service import UsageStore
from plan_limits.models.owner import OwnerRef

UTC = timezone.utc
JAN = (datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 2, 1, tzinfo=UTC))
FEB = (datetime(2025, 2, 1, tzinfo=UTC), datetime(2025, 3, 1, tzinfo=UTC))


def test_missing_window_reads_as_zero(owner):
    store = UsageStore()
    assert store.get_usage(owner, "api_calls", JAN) == 0
    assert store.get_record(owner, "api_calls", JAN) is None


def test_increment_creates_then_adds(owner, clock):
    store = UsageStore(clock=clock)
    assert store.increment(owner, "api_calls", JAN) == 1
    assert store.increment(owner, "api_calls", JAN, amount=4) == 5

    record = store.get_record(owner, "api_calls", JAN)
    assert record.used == 5
    assert record.window_start == JAN[0]
    assert record.window_end == JAN[1]
    assert record.last_used_at == clock.now


def test_windows_are_counted_separately(owner):
    store = UsageStore()
    store.increment(owner, "api_calls", JAN, amount=3)
    store.increment(owner, "api_calls", FEB, amount=2)

    assert store.get_usage(owner, "api_calls", JAN) == 3
    assert store.get_usage(owner, "api_calls", FEB) == 2
    assert [r.used for r in store.history(owner, "api_calls")] == [2, 3]


def test_counters_are_isolated_per_owner_and_key(owner):
    other = ("Organization", "someone-else")
    store = UsageStore()
    store.increment(owner, "api_calls", JAN, amount=3)
    store.increment(other, "api_calls", JAN, amount=7)
    store.increment(owner, "reports", JAN)

    assert store.get_usage(owner, "api_calls", JAN) == 3
    assert store.get_usage(other, "api_calls", JAN) == 7
    assert store.get_usage(owner, "reports", JAN) == 1


@pytest.mark.parametrize("amount", [-1, 1.5, "2", True])
def test_increment_rejects_invalid_amounts(owner, amount):
    with pytest.raises(ConfigurationError):
        UsageStore().increment(owner, "api_calls", JAN, amount=amount)


def test_concurrent_first_increments_are_not_lost(owner):
    store = UsageStore()
    workers = 6

    def bump(_):
        return store.increment(owner, "api_calls", JAN)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(bump, range(workers)))

    assert store.get_usage(owner, "api_calls", JAN) == workers
    assert sorted(results) == list(range(1, workers + 1))


def test_prune_before_removes_only_ended_windows(owner):
    store = UsageStore()
    store.increment(owner, "api_calls", JAN)
    store.increment(owner, "api_calls", FEB)

    assert store.prune_before(datetime(2025, 2, 15, tzinfo=UTC)) == 1
    assert store.get_usage(owner, "api_calls", JAN) == 0
    assert store.get_usage(owner, "api_calls", FEB) == 1


# ---------- live counters ----------

def test_table_counter_counts_live_rows(owner, add_project, remove_project):
    counter = TableCounter(projects, owner_id_column="org_id")
    first = add_project(owner)
    add_project(owner)
    add_project(OwnerRef(owner_type="Organization", owner_id="other-org"))
    assert counter.count(owner) == 2

    remove_project(first)
    assert counter.count(owner) == 1


def test_table_counter_named_scope(owner, add_project):
    counter = TableCounter(
        projects,
        owner_id_column="org_id",
        scopes={"active": lambda stmt: stmt.where(projects.c.status == "active")},
    )
    add_project(owner)
    add_project(owner, status="archived")

    assert counter.count(owner) == 2
    assert counter.count(owner, "active") == 1


def test_table_counter_mapping_scope(owner, add_project):
    counter = TableCounter(projects, owner_id_column="org_id")
    add_project(owner, status="archived")
    add_project(owner, status="archived")
    add_project(owner)
    assert counter.count(owner, {"status": "archived"}) == 2


def test_table_counter_predicate_scopes(owner, add_project):
    counter = TableCounter(projects, owner_id_column="org_id")
    add_project(owner)
    add_project(owner, status="archived")

    # Boolean expression
    assert counter.count(owner, lambda stmt: projects.c.status != "archived") == 1
    # Owner-aware predicate returning a narrowed select
    seen = []

    def by_owner(stmt, ref):
        seen.append(ref)
        return stmt.where(projects.c.status == "archived")

    assert counter.count(owner, by_owner) == 1
    assert seen == [owner]


def test_table_counter_composed_scopes(owner, add_project):
    counter = TableCounter(
        projects,
        owner_id_column="org_id",
        scopes={"not_deleted": lambda stmt: stmt.where(projects.c.status != "deleted")},
    )
    add_project(owner)
    add_project(owner, status="archived")
    add_project(owner, status="deleted")
    assert counter.count(owner, ["not_deleted", {"status": "archived"}]) == 1


def test_table_counter_unknown_scope_raises(owner):
    counter = TableCounter(projects, owner_id_column="org_id")
    with pytest.raises(ConfigurationError):
        counter.count(owner, "missing")
    with pytest.raises(ConfigurationError):
        counter.count(owner, 42)


def test_table_counter_rejects_unknown_columns():
    table = Table("widgets", MetaData(), Column("id", Integer, primary_key=True), Column("team_id", String(50)))
    with pytest.raises(ConfigurationError):
        TableCounter(table)
    with pytest.raises(ConfigurationError):
        TableCounter(table, owner_id_column="team_id", owner_type_column="team_type")


def test_table_counter_filters_owner_type(owner, add_seat):
    counter = TableCounter(seats, owner_type_column="owner_type")
    add_seat(owner)
    add_seat(OwnerRef(owner_type="Workspace", owner_id=owner.owner_id))
    assert counter.count(owner) == 1


def test_function_counter_with_and_without_scope(owner):
    assert FunctionCounter(lambda ref: 4).count(owner) == 4
    assert FunctionCounter(lambda ref, scope: 10 if scope == "all" else 1).count(owner, "all") == 10


def test_registry_default_scope_and_plan_override(owner):
    registry = CounterRegistry()
    registry.register("projects", lambda ref, scope: {"active": 2, "all": 5}.get(scope, 0), default_scope="active")

    assert registry.has("projects")
    assert registry.count(owner, "projects") == 2
    assert registry.count(owner, "projects", scope="all") == 5


def test_registry_missing_counter_counts_zero(owner):
    registry = CounterRegistry()
    assert registry.count(owner, "projects") == 0

    registry.register("projects", lambda ref: 3)
    registry.unregister("projects")
    assert registry.count(owner, "projects") == 0


def test_registry_rejects_non_callable():
    with pytest.raises(ConfigurationError):
        CounterRegistry().register("projects", 5)
