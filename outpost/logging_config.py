"""
Structured logging for outpost.

Records are written as JSON lines to a rotating file under
``settings.log_dir`` and to stderr.  While an action runs, every record
carries the action's name, id and transport kind, and the credentials of the
transport it resolved are scrubbed from messages and ``extra`` values before
anything reaches a handler.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from outpost.config.settings import OutpostSettings, get_settings
from outpost.embedded.variants import REDACTED, VARIANTS

DEFAULT_LOG_FILE = "outpost.log"

# Keys whose values never reach a log line, wherever they appear in ``extra``.
SECRET_ATTRIBUTES: frozenset = frozenset().union(
    *(variant.SENSITIVE for variant in VARIANTS.values())
) | {"auth_password", "auth_token", "password", "token", "authorization"}

# Libraries that log every channel event or request at INFO.
_CHATTY_LOGGERS = ("paramiko", "kubernetes", "urllib3", "httpx", "httpcore", "websockets")

_MIN_SECRET_LENGTH = 4
_SCOPE_FIELDS = ("action", "action_id", "transport")
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"} | set(_SCOPE_FIELDS)


@dataclass(frozen=True)
class ActionScope:
    action: str
    action_id: Optional[str] = None
    transport: Optional[str] = None
    secrets: Tuple[str, ...] = ()

    def scrub(self, text: str) -> str:
        for secret in self.secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return text


_SCOPE: ContextVar[Optional[ActionScope]] = ContextVar("outpost_action_scope", default=None)


def current_scope() -> Optional[ActionScope]:
    return _SCOPE.get()


def get_action_id() -> Optional[str]:
    scope = _SCOPE.get()
    return scope.action_id if scope is not None else None


@contextmanager
def action_scope(
    action: str,
    action_id: Optional[str] = None,
    *,
    transport: Optional[str] = None,
    secrets: Iterable[str] = (),
) -> Iterator[ActionScope]:
    """Tag log records emitted inside the block with the running action."""

    # Longest first so a secret containing another is replaced whole.
    kept = sorted(
        {s for s in secrets if isinstance(s, str) and len(s) >= _MIN_SECRET_LENGTH},
        key=len,
        reverse=True,
    )
    scope = ActionScope(action, action_id, transport, tuple(kept))
    token = _SCOPE.set(scope)
    try:
        yield scope
    finally:
        _SCOPE.reset(token)


def redact(value: Any, scope: Optional[ActionScope] = None) -> Any:
    """Mask secret keys and known secret values inside ``value``."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if str(key).lower() in SECRET_ATTRIBUTES and item:
                out[key] = REDACTED
            else:
                out[key] = redact(item, scope)
        return out
    if isinstance(value, (list, tuple)):
        return [redact(item, scope) for item in value]
    if isinstance(value, str) and scope is not None:
        return scope.scrub(value)
    return value


class ActionScopeFilter(logging.Filter):
    """Attach the running action to each record and scrub its secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        scope = _SCOPE.get()
        for name in _SCOPE_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, getattr(scope, name) if scope is not None else None)
        if scope is not None and scope.secrets:
            message = record.getMessage()
            scrubbed = scope.scrub(message)
            if scrubbed != message:
                record.msg = scrubbed
                record.args = None
            for key, value in list(record.__dict__.items()):
                if key not in _STANDARD_ATTRS:
                    record.__dict__[key] = redact(value, scope)
        return True


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as structured JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _SCOPE_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info

        extras = {
            key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS
        }
        if extras:
            payload["extra"] = _serialise_extra(redact(extras))

        return json.dumps(payload, ensure_ascii=True)


def _serialise_extra(data: Dict[str, Any]) -> Dict[str, Any]:
    serialised: Dict[str, Any] = {}
    for key, value in data.items():
        try:
            json.dumps(value)
            serialised[key] = value
        except (TypeError, ValueError):
            serialised[key] = repr(value)
    return serialised


def _coerce_level(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def _own_handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(StructuredJsonFormatter())
    handler.addFilter(ActionScopeFilter())
    handler._outpost_handler = True  # type: ignore[attr-defined]
    return handler


def init_logging(
    settings: Optional[OutpostSettings] = None,
    *,
    filename: str = DEFAULT_LOG_FILE,
) -> Path:
    """Install the outpost handlers on the root logger.

    The level and directory come from ``settings.log_level`` and
    ``settings.log_dir``.  Calling this again replaces only the handlers a
    previous call installed.
    """

    settings = settings or get_settings()
    base = Path(settings.log_dir).expanduser().resolve()
    base.mkdir(parents=True, exist_ok=True)
    log_path = base / filename

    root_logger = logging.getLogger()
    root_logger.setLevel(_coerce_level(settings.log_level))

    for handler in list(root_logger.handlers):
        if getattr(handler, "_outpost_handler", False):
            root_logger.removeHandler(handler)
            handler.close()

    root_logger.addHandler(
        _own_handler(
            RotatingFileHandler(
                str(log_path),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        )
    )
    root_logger.addHandler(_own_handler(logging.StreamHandler()))

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, settings.log_level)
    return log_path


__all__ = [
    "ActionScope",
    "ActionScopeFilter",
    "SECRET_ATTRIBUTES",
    "StructuredJsonFormatter",
    "action_scope",
    "current_scope",
    "get_action_id",
    "init_logging",
    "redact",
]
