"""Structured logging for the help desk API.

Every record leaving the root handler is one JSON object. The request id and
tenant hint bound by the HTTP middleware are stamped onto records logged
anywhere inside that request, so handler and service logs correlate without
passing ids around.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from typing import Optional

from helpdesk.utils.time import utc_now

_CONTEXT_KEYS = (
    "request_id",
    "tenant_hint",
    "method",
    "path",
    "route",
    "status_code",
    "duration_ms",
    "organization_id",
    "ticket_id",
    "mail_kind",
)

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_tenant_hint: ContextVar[Optional[str]] = ContextVar("tenant_hint", default=None)


def bind_request(request_id: str, tenant_hint: Optional[str] = None) -> tuple[Token, Token]:
    return _request_id.set(request_id), _tenant_hint.set(tenant_hint)


def unbind_request(tokens: tuple[Token, Token]) -> None:
    request_token, tenant_token = tokens
    _request_id.reset(request_token)
    _tenant_hint.reset(tenant_token)


class RequestContextFilter(logging.Filter):
    """Copy the bound request id and tenant hint onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id.get()
        if getattr(record, "tenant_hint", None) is None:
            record.tenant_hint = _tenant_hint.get()
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": utc_now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger once."""
    root_logger = logging.getLogger()
    if any(isinstance(h.formatter, JSONFormatter) for h in root_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpx", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
