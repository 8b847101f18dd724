"""
Live counters for persistent caps.

A counter answers "how many rows does this owner have right now", optionally
narrowed by a scope. Scope forms:
- None: unscoped
- "name": a named scope registered on the counter
- {"column": value}: equality constraints
- fn(stmt) or fn(stmt, owner): predicate returning a narrowed Select or a
  boolean SQL expression
- [scope, scope, ...]: applied left to right
"""

from inspect import Parameter, signature
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
import logging

from sqlalchemy import Table, func, select
from sqlalchemy.sql import Select

from plan_limits.core.database import get_db_session
from plan_limits.core.errors import ConfigurationError
from plan_limits.models.owner import OwnerRef

logger = logging.getLogger("plan_limits.usage")


class Counter(Protocol):
    def count(self, owner: OwnerRef, scope: Any = None) -> int:
        ...


def _positional_arity(fn: Callable) -> int:
    try:
        params = signature(fn).parameters.values()
    except (TypeError, ValueError):
        return 1
    if any(p.kind == Parameter.VAR_POSITIONAL for p in params):
        return 2
    return sum(1 for p in params if p.kind in (Parameter.POSITIONAL_ONLY, Parameter.POSITIONAL_OR_KEYWORD))


class TableCounter:
    """
    COUNT(*) over a caller-owned SQLAlchemy table.

    Args:
        table: Table holding the owned rows
        owner_id_column: Column storing the owner id
        owner_type_column: Column storing the owner type (None when the table
            belongs to a single owner type)
        scopes: Named scopes, each fn(stmt) -> stmt
    """

    def __init__(
        self,
        table: Table,
        owner_id_column: str = "owner_id",
        owner_type_column: Optional[str] = None,
        scopes: Optional[Dict[str, Callable[[Select], Select]]] = None,
    ):
        self.table = table
        self.owner_id_column = owner_id_column
        self.owner_type_column = owner_type_column
        self.scopes = dict(scopes or {})
        self._column(owner_id_column)
        if owner_type_column:
            self._column(owner_type_column)

    def _column(self, name: str):
        if name not in self.table.c:
            raise ConfigurationError(f"Table {self.table.name} has no column {name}")
        return self.table.c[name]

    def base_query(self, owner: OwnerRef) -> Select:
        stmt = select(func.count()).select_from(self.table).where(
            self._column(self.owner_id_column) == owner.owner_id
        )
        if self.owner_type_column:
            stmt = stmt.where(self._column(self.owner_type_column) == owner.owner_type)
        return stmt

    def apply_scope(self, stmt: Select, scope: Any, owner: OwnerRef) -> Select:
        if scope is None:
            return stmt
        if isinstance(scope, (list, tuple)):
            for part in scope:
                stmt = self.apply_scope(stmt, part, owner)
            return stmt
        if isinstance(scope, str):
            named = self.scopes.get(scope)
            if named is None:
                raise ConfigurationError(f"Unknown scope {scope} for {self.table.name}")
            return named(stmt)
        if isinstance(scope, Mapping):
            for column, value in scope.items():
                stmt = stmt.where(self._column(column) == value)
            return stmt
        if callable(scope):
            result = scope(stmt, owner) if _positional_arity(scope) >= 2 else scope(stmt)
            if isinstance(result, Select):
                return result
            return stmt.where(result)
        raise ConfigurationError(f"Unsupported count scope: {scope!r}")

    def count(self, owner: OwnerRef, scope: Any = None) -> int:
        stmt = self.apply_scope(self.base_query(owner), scope, owner)
        with get_db_session() as session:
            return int(session.execute(stmt).scalar_one())


class FunctionCounter:
    """Wraps fn(owner) or fn(owner, scope) returning an int."""

    def __init__(self, fn: Callable[..., int]):
        self.fn = fn
        self._takes_scope = _positional_arity(fn) >= 2

    def count(self, owner: OwnerRef, scope: Any = None) -> int:
        if self._takes_scope:
            return int(self.fn(owner, scope))
        return int(self.fn(owner))


class CounterRegistry:
    """Counters per limit key, each with an optional default scope."""

    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._default_scopes: Dict[str, Any] = {}

    def register(self, limit_key: str, counter: Any, default_scope: Any = None) -> None:
        if not hasattr(counter, "count"):
            if not callable(counter):
                raise ConfigurationError(f"Counter for {limit_key} must be callable or expose count()")
            counter = FunctionCounter(counter)
        self._counters[limit_key] = counter
        if default_scope is not None:
            self._default_scopes[limit_key] = default_scope
        else:
            self._default_scopes.pop(limit_key, None)

    def unregister(self, limit_key: str) -> None:
        self._counters.pop(limit_key, None)
        self._default_scopes.pop(limit_key, None)

    def has(self, limit_key: str) -> bool:
        return limit_key in self._counters

    def count(self, owner: OwnerRef, limit_key: str, scope: Any = None) -> int:
        """Live count; a plan-level scope replaces the registered default scope."""
        counter = self._counters.get(limit_key)
        if counter is None:
            logger.debug("[usage] NO_COUNTER", extra={"limit_key": limit_key})
            return 0
        effective_scope = scope if scope is not None else self._default_scopes.get(limit_key)
        return counter.count(owner, effective_scope)
