"""
Courtroom Logging — Case and Audit Logging

THIS MODULE DEFINES NO COMMANDS.

Responsibilities:
- Log pipeline actions (evaluations, hearings, submissions)
- Log punishments and escalations
- Log owner control changes
- Log errors caught at stage boundaries

Every audit line is one JSON object. The case identifiers (identity,
case_id, stage) sit at the top level so a single case can be followed
through the log; everything else goes under "data".
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Union

AUDIT_LOGGER_NAME = "courtroom.audit"
CASE_KEYS = ("identity", "case_id", "stage")


@dataclass(frozen=True)
class LogContext:
    """Who and which case an audit line is about. Unset fields are omitted."""

    identity: Optional[str] = None
    case_id: Optional[str] = None
    offense: Optional[str] = None
    stage: Optional[str] = None
    actor_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        fields = {
            "identity": self.identity,
            "case_id": self.case_id,
            "offense": self.offense,
            "stage": self.stage,
            "actor_id": self.actor_id,
        }
        return {**{k: v for k, v in fields.items() if v is not None}, **self.extra}


Context = Optional[Union[LogContext, Mapping[str, Any]]]


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = dict(getattr(record, "data", None) or {})
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "event": getattr(record, "event", None),
            "message": record.getMessage(),
        }
        for key in CASE_KEYS:
            if key in data:
                payload[key] = data.pop(key)
        if data:
            payload["data"] = data
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_audit_logger() -> logging.Logger:
    """The JSON audit logger. Configured once; does not propagate to the root logger."""
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def _emit(
    level: int,
    event: str,
    message: str,
    context: Context,
    extra: Mapping[str, Any],
    exc_info: Optional[BaseException] = None,
) -> None:
    base = context.as_dict() if isinstance(context, LogContext) else dict(context or {})
    get_audit_logger().log(
        level,
        message,
        extra={"event": event, "data": {**base, **extra}},
        exc_info=exc_info,
    )


def log_action(message: str, *, context: Context = None, action: Optional[str] = None, **extra: Any) -> None:
    if action:
        extra["action"] = action
    _emit(logging.INFO, "action", message, context, extra)


def log_escalation(message: str, *, context: Context = None, escalation: Optional[str] = None, **extra: Any) -> None:
    """Convictions, sentences and filed cases."""
    if escalation:
        extra["escalation"] = escalation
    _emit(logging.WARNING, "escalation", message, context, extra)


def log_admin_change(message: str, *, context: Context = None, change: Optional[str] = None, **extra: Any) -> None:
    if change:
        extra["change"] = change
    _emit(logging.INFO, "admin_change", message, context, extra)


def log_error(message: str, *, context: Context = None, error: Optional[BaseException] = None, **extra: Any) -> None:
    if error is not None:
        extra["error"] = repr(error)
    _emit(logging.ERROR, "error", message, context, extra, exc_info=error)


def log_batch(event: str, entries: Iterable[Mapping[str, Any]], *, message: str, context: Context = None) -> None:
    """One audit line per entry, all sharing `event` and `context` (e.g. each juror's vote)."""
    for entry in entries:
        _emit(logging.INFO, event, message, context, entry)
