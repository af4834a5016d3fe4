# chaoscanvas/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("CHAOS_LOG_SCHEMA", "chaoscanvas.log.v1")
_LOG_SERVICE = os.environ.get("CHAOS_SERVICE", "chaoscanvas")
_LOG_VERSION = os.environ.get("CHAOS_VERSION", "0.0.0")
_LOG_ENV = os.environ.get("CHAOS_ENV", os.environ.get("ENV", "dev"))

# Max chars per field (truncate to keep JSON small)
_MAX_FIELD = max(512, int(os.environ.get("CHAOS_LOG_MAX_FIELD", "8192") or 8192))

_INCLUDE_STACK = os.environ.get("CHAOS_LOG_INCLUDE_STACK", "1") == "1"

# Keys whose values never reach the log stream
_REDACT_KEYS = {"authorization", "cookie", "set-cookie", "x-api-key", "email"}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}

# Envelope fields lifted out of the bound context / record extras
_ENVELOPE_KEYS = (
    "req_id",
    "user_id",
    "contribution_id",
    "layer_id",
    "route",
    "path",
    "method",
    "status",
    "latency_ms",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "chaos_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``d`` with secret-bearing keys masked."""
    return {k: ("***" if str(k).lower() in _REDACT_KEYS else _truncate(v)) for k, v in d.items()}


class JSONFormatter(logging.Formatter):
    """
    One compact JSON object per record.

    Envelope fields:
      - schema, service, version, env
      - ts, lvl, logger, msg
      - req_id, user_id, contribution_id, layer_id
      - route, path, method, status, latency_ms
    Anything else passed via ``extra=`` lands under ``meta``.
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()
        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        # bound ctx wins over record attributes
        for key in _ENVELOPE_KEYS:
            v = ctx.get(key, getattr(record, key, None))
            if v is not None:
                evt[key] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta: Dict[str, Any] = {}
        for k, v in record.__dict__.items():
            if k in _LOG_RECORD_STD_ATTRS or k in evt or k.startswith("_"):
                continue
            meta[k] = v
        for k, v in ctx.items():
            if k not in evt and k not in meta:
                meta[k] = v
        if meta:
            evt["meta"] = scrub_dict(meta)

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """Configure root (+ optionally uvicorn) for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """Get or create a request id and bind it into context immediately."""
    rid = None
    if headers:
        rid = headers.get("x-request-id") or headers.get("X-Request-Id")
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_ledger_event(
    logger: logging.Logger,
    *,
    kind: str,
    user_id: str,
    amount: int,
    balance: Optional[int] = None,
    contribution_id: Optional[str] = None,
    message: str = "ledger.event",
    level: int = logging.INFO,
) -> None:
    """
    One structured record per balance mutation.

    Only ids and integers are logged; content payloads never are.
    """
    extra: Dict[str, Any] = {
        "kind": kind,
        "user_id": user_id,
        "amount": int(amount),
    }
    if balance is not None:
        extra["balance"] = int(balance)
    if contribution_id is not None:
        extra["contribution_id"] = contribution_id
    logger.log(level, message, extra=extra)


# ---------- ASGI middleware (structured request logs, no uvicorn deps) ----------
class RequestLogMiddleware:
    """
    Lightweight ASGI middleware that emits JSON request start/finish lines with
    req_id, method, path, status and latency_ms.

    Bodies are never logged. Websocket scopes pass straight through.
    Usage:
        app.add_middleware(RequestLogMiddleware, log_headers=False)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "chaoscanvas.http",
        log_headers: bool = False,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = context().get("req_id") or ensure_request_id(headers)
        bind(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})
        else:
            self.log.debug("http.start")

        t0 = time.perf_counter()
        status_holder = {"code": None}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                },
            )
            # Clear request-scoped keys to avoid leakage across coroutines
            unbind("path", "method", "user_id")


# ---------- Convenience: module-level logger ----------
_logger: Optional[logging.Logger] = None


def get_logger(name: str = "chaoscanvas") -> logging.Logger:
    """
    Return a logger; the first call installs JSON output on root + uvicorn
    at CHAOS_LOG_LEVEL.
    """
    global _logger
    if _logger is None:
        lvl = os.environ.get("CHAOS_LOG_LEVEL", "INFO")
        _logger = configure_json_logging(level=lvl, include_uvicorn=True)
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "log_ledger_event",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]
