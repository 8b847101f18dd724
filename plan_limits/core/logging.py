"""
Structured logging for limit evaluations.

Every record under the `plan_limits` namespace carries the evaluation_id of
the check, status render or request that produced it, plus whatever
owner / limit fields the caller passed through `extra=`. Production emits one
JSON object per line; development emits `key=value` pairs after the message.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

evaluation_id_ctx_var: ContextVar[Optional[str]] = ContextVar("evaluation_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "evaluation_id"}
_MAX_FIELD_LENGTH = 500


def get_evaluation_id(default: Optional[str] = None) -> Optional[str]:
    eid = evaluation_id_ctx_var.get()
    return eid if eid is not None else default


def _iso(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, object]:
    return {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS and v is not None}


class EvaluationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "evaluation_id", None) is None:
            record.evaluation_id = get_evaluation_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _iso(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "evaluation_id": getattr(record, "evaluation_id", None),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        eid = getattr(record, "evaluation_id", None)
        parts = [_iso(record), record.levelname, f"[{record.name}]"]
        if eid:
            parts.append(f"[eid={eid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in sorted(_fields(record).items()))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Install one stdout handler on the `plan_limits` logger (replacing earlier ones)."""
    logger = logging.getLogger("plan_limits")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(EvaluationIdFilter())

    logger.handlers = [handler]
    logger.propagate = True


def _truncate(value) -> str:
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= _MAX_FIELD_LENGTH:
        return text
    return text[:_MAX_FIELD_LENGTH] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    evaluation_id: Optional[str] = None,
    owner_type: Optional[str] = None,
    owner_id: Optional[str] = None,
    limit_key: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Log one limit-related fact with owner / key correlation.

    Free-form `extra` values are stringified and truncated so a large payload
    (a custom message, a scope repr) cannot flood the log pipeline.
    """
    logger = logging.getLogger("plan_limits")
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {
        "evaluation_id": evaluation_id or get_evaluation_id(),
        "owner_type": owner_type,
        "owner_id": owner_id,
        "limit_key": limit_key,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        payload[key] = _truncate(value)

    getattr(logger, level, logger.info)(msg, extra=payload)
