"""Structured logging configuration using structlog.

Call ``configure_logging()`` once at process startup: the API factory in
``api/main.py`` does it for the web process and ``workers/celery_app.py``
does it for Celery workers.  Modules then log through structlog::

    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("source_submitted", source_id=source_id, priority="high")

Lower-level helpers may keep using ``logging.getLogger(__name__)``; their
records are routed through the same processor chain and renderer.

A ``request_id`` context variable is populated by the request-logging
middleware and merged into every record emitted while serving that request.
Celery tasks bind ``task`` and ``run_id`` with :func:`bind_run_context`.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, WrappedLogger

# ---------------------------------------------------------------------------
# Context variable, set by the HTTP middleware and read by the log processor
# ---------------------------------------------------------------------------

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
"""Per-request ID propagated from the HTTP middleware to log processors."""


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


_SECRET_SUBSTRINGS: frozenset[str] = frozenset({
    "api_key",
    "password",
    "secret",
    "token",
    "bearer",
    "authorization",
})
"""Lower-cased substrings identifying event-dict keys whose values are redacted.

``tokens_used`` is an extraction usage counter, not a credential, and is
listed in :data:`_REDACTION_EXEMPT`.
"""

_REDACTION_EXEMPT: frozenset[str] = frozenset({"tokens_used", "total_tokens_used"})


def _is_secret_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _REDACTION_EXEMPT:
        return False
    return any(secret in key_lower for secret in _SECRET_SUBSTRINGS)


def _redact_secrets(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Replace values of secret-bearing keys with a redaction marker.

    Scans top-level keys and one level of nested ``dict`` values (request
    headers are usually logged as a dict).

    Args:
        logger: The wrapped logger instance (unused).
        method_name: The log method name (unused).
        event_dict: Mutable event dictionary being assembled.

    Returns:
        The event dict with sensitive values replaced by ``"[REDACTED]"``.
    """
    redacted = "[REDACTED]"
    for key in list(event_dict.keys()):
        if _is_secret_key(key):
            event_dict[key] = redacted
            continue
        val = event_dict[key]
        if isinstance(val, dict):
            for nested_key in list(val.keys()):
                if isinstance(nested_key, str) and _is_secret_key(nested_key):
                    val[nested_key] = redacted
    return event_dict


def _inject_request_id(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Add the current request ID to the event dict when one is set."""
    rid = request_id_var.get()
    if rid is not None and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def bind_run_context(task: str, run_id: str | None = None) -> None:
    """Reset structlog's context and bind the Celery task name and run ID.

    Args:
        task: Short task name, e.g. ``"run_due_tasks"``.
        run_id: Identifier of the engine batch or analysis run, if any.
    """
    structlog.contextvars.clear_contextvars()
    context: dict[str, str] = {"task": task}
    if run_id is not None:
        context["run_id"] = run_id
    structlog.contextvars.bind_contextvars(**context)


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog and stdlib logging.

    At ``DEBUG`` the console renderer is used for readable coloured output;
    at any other level records are emitted as newline-delimited JSON with
    ``timestamp``, ``level``, ``logger``, ``event``, and any bound context.

    Safe to call more than once: handlers on the root logger are replaced,
    not appended.

    Args:
        log_level: One of ``"DEBUG"``, ``"INFO"``, ``"WARNING"``,
            ``"ERROR"``, ``"CRITICAL"``.  Case-insensitive.
    """
    level_upper = log_level.upper()
    numeric_level = getattr(logging, level_upper, logging.INFO)
    is_development = level_upper == "DEBUG"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_request_id,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if is_development:
        final_renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer(
            colors=True,
        )
    else:
        final_renderer = structlog.processors.JSONRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            final_renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    if not is_development:
        for noisy_logger in ("uvicorn.access", "httpx", "httpcore", "celery.redirected"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
