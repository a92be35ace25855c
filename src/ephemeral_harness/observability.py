"""Structured logging for the harness.

Two correlation fields are attached to every entry when known:

- ``test_case``: the case the sequencer is currently running. It is kept in
  a module global rather than only a context variable, because log lines
  from the uvicorn thread and the system's worker threads must carry it too.
- ``request_id``: the probe call being served (set by the middleware).

Usage::

    configure_logging(level="DEBUG", json_output=True)
    get_logger(__name__).info("purge_completed", deleted=3)
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar

import structlog

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_test_case: str | None = None
_configured = False

# Third-party loggers that would otherwise drown the harness's own events.
_QUIET_LOGGERS = ("uvicorn.access", "uvicorn.error", "httpx", "httpcore")


def set_test_case(name: str | None) -> None:
    """Tag subsequent log entries, from any thread, with ``name``."""
    global _test_case
    _test_case = name


def _add_correlation(logger, method_name: str, event_dict: dict) -> dict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    if _test_case is not None:
        event_dict.setdefault("test_case", _test_case)
    return event_dict


def _renderer(json_output: bool):
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
    force: bool = False,
) -> None:
    """Route structlog and stdlib logging through one stderr handler.

    ``level`` and ``json_output`` fall back to ``HARNESS_LOG_LEVEL`` and
    ``HARNESS_LOG_FORMAT``. Only the first call takes effect unless
    ``force`` is set.
    """
    global _configured
    if _configured and not force:
        return
    _configured = True

    level = (level or os.environ.get("HARNESS_LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.environ.get("HARNESS_LOG_FORMAT", "console") == "json"

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        _add_correlation,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        # Entries from plain stdlib loggers get the same correlation fields.
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(json_output),
        ],
    ))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level, logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
