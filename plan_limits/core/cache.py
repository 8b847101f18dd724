"""
Per-evaluation memo cache.

One dict per logical evaluation (request, job run, status render), held in a
ContextVar so concurrent evaluations on other threads or tasks never share it.
Outside an evaluation scope nothing is cached and every lookup recomputes.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Dict, Hashable, Iterator, Optional, Tuple
from uuid import uuid4

from plan_limits.core.logging import evaluation_id_ctx_var

_evaluation_cache: ContextVar[Optional[Dict[Hashable, Any]]] = ContextVar("plan_limits_evaluation_cache", default=None)


@contextmanager
def evaluation_scope(evaluation_id: Optional[str] = None) -> Iterator[str]:
    """Open an evaluation scope; nested scopes join the outer one."""
    if _evaluation_cache.get() is not None:
        yield evaluation_id_ctx_var.get() or ""
        return

    eid = evaluation_id or evaluation_id_ctx_var.get() or uuid4().hex
    cache_token = _evaluation_cache.set({})
    id_token = evaluation_id_ctx_var.set(eid)
    try:
        yield eid
    finally:
        evaluation_id_ctx_var.reset(id_token)
        _evaluation_cache.reset(cache_token)


def in_evaluation() -> bool:
    return _evaluation_cache.get() is not None


def memoize(key: Tuple[Hashable, ...], compute: Callable[[], Any]) -> Any:
    cache = _evaluation_cache.get()
    if cache is None:
        return compute()
    if key in cache:
        return cache[key]
    value = compute()
    cache[key] = value
    return value


def evict(key: Tuple[Hashable, ...]) -> None:
    cache = _evaluation_cache.get()
    if cache is not None:
        cache.pop(key, None)


def clear() -> None:
    cache = _evaluation_cache.get()
    if cache is not None:
        cache.clear()


def evict_prefix(prefix: Tuple[Hashable, ...]) -> None:
    """Drop every memoized key that starts with `prefix`."""
    cache = _evaluation_cache.get()
    if cache is None:
        return
    size = len(prefix)
    for key in [k for k in cache if isinstance(k, tuple) and k[:size] == prefix]:
        del cache[key]
