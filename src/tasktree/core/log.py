from __future__ import annotations

"""
tasktree.core.log
=================

Structured logging on top of the standard `logging` module:
- Context propagation via contextvars (task_id, parent_id, worker, ...).
- JSON formatter for production; human formatter for local debugging.
- LoggerAdapter that accepts arbitrary keyword fields.
- `swallow()` to replace `try/except: pass` with a logged, coded suppression.

Importing this module is silent: only a NullHandler is installed. Applications
and tests opt in with `configure_from_env()` or `enable_stdout_logging()`.
"""

import contextvars
import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, ClassVar, Final

__all__ = [
    "bind_context",
    "configure_from_env",
    "disable_stdout_logging",
    "enable_stdout_logging",
    "get_logger",
    "log_context",
    "set_level",
    "swallow",
    "warn_once",
]

# ---------- Context ----------

_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "tasktree_log_ctx", default=None
)


def _ctx_copy() -> dict[str, Any]:
    ctx = _log_context.get()
    return dict(ctx) if ctx else {}


def bind_context(**fields: Any) -> None:
    """Merge fields into the current structured log context (None values are dropped)."""
    ctx = _ctx_copy()
    ctx.update({k: v for k, v in fields.items() if v is not None})
    _log_context.set(ctx)


@contextmanager
def log_context(**fields: Any):
    """Temporarily add fields to the structured log context."""
    token = _log_context.set({**_ctx_copy(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _log_context.reset(token)


# ---------- Formatters ----------

_STD_ATTRS: Final[frozenset[str]] = frozenset(
    {
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
        "asctime",
        "taskName",
    }
)


def _iso_utc_ms(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line: ts, level, logger, message, context fields,
    keyword extras and (optionally) the exception stack.
    """

    def __init__(self, *, include_stack: bool = False) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": _iso_utc_ms(record.created),
            "level": record.levelname,
            "logger": record.name,
        }
        msg = record.getMessage()
        if msg:
            out["message"] = msg

        ctx = _log_context.get()
        if ctx:
            out.update(ctx)

        for k, v in record.__dict__.items():
            if k in _STD_ATTRS or k in out:
                continue
            out[k] = v

        if record.exc_info:
            exc_type = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            err = out.setdefault("error", {})
            err["type"] = exc_type
            err["message"] = str(record.exc_info[1]) if record.exc_info[1] else None
            if self.include_stack:
                err["stack"] = self.formatException(record.exc_info)

        return json.dumps(out, ensure_ascii=False, separators=(",", ":"), default=str)


class HumanFormatter(logging.Formatter):
    """Compact single-line formatter for local debugging."""

    default_time_format = "%Y-%m-%d %H:%M:%S"
    default_msec_format = "%s.%03d"

    _CTX_KEYS: ClassVar[tuple[str, ...]] = ("task_id", "parent_id", "worker")

    def format(self, record: logging.LogRecord) -> str:
        s = f"{self.formatTime(record)} {record.levelname:<5} {record.name}: {record.getMessage()}"
        ctx = _log_context.get()
        if ctx:
            compact = {k: ctx[k] for k in self._CTX_KEYS if ctx.get(k) is not None}
            if compact:
                s += "  [" + ", ".join(f"{k}={v}" for k, v in compact.items()) + "]"
        if record.exc_info:
            s += "\n" + self.formatException(record.exc_info)
        return s


class ContextFilter(logging.Filter):
    """Copy contextvars onto the record so handlers can route on them."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _log_context.get()
        if ctx:
            for k, v in ctx.items():
                record.__dict__.setdefault(k, v)
        return True


class _KwExtraAdapter(logging.LoggerAdapter):
    """
    Moves unknown kwargs into `extra={...}` so callers can write
        log.info("task.created", event="coord.task.created", task_id=...)
    """

    _passthrough: ClassVar[frozenset[str]] = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})

    def process(self, msg, kwargs):
        extra = kwargs.get("extra")
        if not isinstance(extra, dict):
            extra = {}
        for k in list(kwargs.keys()):
            if k in self._passthrough:
                continue
            v = kwargs.pop(k)
            key = f"field_{k}" if k in _STD_ATTRS else k
            extra.setdefault(key, v)
        kwargs["extra"] = extra
        return msg, kwargs


_WARN_ONCE_SEEN: set[str] = set()
_WARN_ONCE_LOCK = threading.Lock()


def warn_once(
    logger: logging.Logger | logging.LoggerAdapter,
    code: str,
    msg: str,
    *,
    level: int = logging.WARNING,
    **extra: Any,
) -> None:
    """Log only once per process for the given code."""
    with _WARN_ONCE_LOCK:
        if code in _WARN_ONCE_SEEN:
            return
        _WARN_ONCE_SEEN.add(code)
    adapter = logger if isinstance(logger, logging.LoggerAdapter) else _KwExtraAdapter(logger, {})
    adapter.log(level, msg, code=code, **extra)


# ---------- Public configuration API ----------

_ROOT_LOGGER_NAME = "tasktree"
_HANDLER_KEY = "_tasktree_stdout_handler"
_configured = False


def _bootstrap_minimal() -> None:
    global _configured
    if _configured:
        return
    lg = logging.getLogger(_ROOT_LOGGER_NAME)
    lg.setLevel(logging.INFO)
    if not any(isinstance(h, logging.NullHandler) for h in lg.handlers):
        lg.addHandler(logging.NullHandler())
    if not any(isinstance(f, ContextFilter) for f in lg.filters):
        lg.addFilter(ContextFilter())
    _configured = True


def get_logger(name: str | None = None) -> logging.LoggerAdapter:
    """Namespaced logger adapter accepting keyword fields. Silent by default."""
    _bootstrap_minimal()
    base = logging.getLogger(_ROOT_LOGGER_NAME)
    lg = base.getChild(name) if name else base
    # logger filters do not run for records propagated from children
    if not any(isinstance(f, ContextFilter) for f in lg.filters):
        lg.addFilter(ContextFilter())
    return _KwExtraAdapter(lg, {})


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    lvl = logging.getLevelName(level.upper())
    if not isinstance(lvl, int):
        raise ValueError(f"Invalid level name: {level!r}")
    return lvl


def set_level(level: int | str) -> None:
    logging.getLogger(_ROOT_LOGGER_NAME).setLevel(_resolve_level(level))


def enable_stdout_logging(
    *,
    level: int | str = logging.INFO,
    json_output: bool = True,
    include_stack: bool = False,
    pretty: bool = False,
) -> None:
    """Attach a stdout handler (replacing a previously attached one)."""
    lvl = _resolve_level(level)
    _bootstrap_minimal()
    lg = logging.getLogger(_ROOT_LOGGER_NAME)
    disable_stdout_logging()

    fmt: logging.Formatter
    if pretty:
        fmt = HumanFormatter()
    elif json_output:
        fmt = JsonFormatter(include_stack=include_stack)
    else:
        fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    h = logging.StreamHandler(sys.stdout)
    h.set_name(_HANDLER_KEY)
    h.setLevel(lvl)
    h.setFormatter(fmt)
    lg.addHandler(h)


def disable_stdout_logging() -> None:
    lg = logging.getLogger(_ROOT_LOGGER_NAME)
    for h in list(lg.handlers):
        if h.get_name() == _HANDLER_KEY:
            lg.removeHandler(h)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes", "on")


def configure_from_env() -> None:
    """
    Honors:
      - TASKTREE_LOG_STDOUT=1 -> attach stdout handler
      - TASKTREE_LOG_LEVEL=DEBUG|INFO|...
      - TASKTREE_LOG_PRETTY=1 -> human formatter instead of JSON
      - TASKTREE_LOG_STACK=1 -> include stack in JSON logs
    """
    level = os.getenv("TASKTREE_LOG_LEVEL", "INFO")
    pretty = _env_flag("TASKTREE_LOG_PRETTY")
    _bootstrap_minimal()
    set_level(level)
    if _env_flag("TASKTREE_LOG_STDOUT"):
        enable_stdout_logging(
            level=level,
            json_output=not pretty,
            include_stack=_env_flag("TASKTREE_LOG_STACK"),
            pretty=pretty,
        )
    else:
        disable_stdout_logging()


# ---------- Exception swallowing with trace ----------


@contextmanager
def swallow(
    *,
    logger: logging.Logger | logging.LoggerAdapter | None = None,
    level: int = logging.DEBUG,
    code: str,
    msg: str | None = None,
    reraise: bool = False,
    extra: Mapping[str, Any] | None = None,
    expected: bool = True,
):
    """
    Log and suppress an exception raised inside the block.

        with swallow(logger=log, code="bus.stop", msg="bus stop failed"):
            await bus.stop()
    """
    base = logger or get_logger("swallow")
    adapter = base if isinstance(base, logging.LoggerAdapter) else _KwExtraAdapter(base, {})
    try:
        yield
    except Exception as e:
        payload: dict[str, Any] = {"code": code, "expected": expected}
        if extra:
            payload.update(extra)
        adapter.log(level, msg or "Suppressed exception", exc_info=e, **payload)
        if reraise:
            raise


_bootstrap_minimal()
