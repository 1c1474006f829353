"""Structured logging configuration with redaction support."""

import logging
import sys
from typing import Any, Dict

import structlog

SENSITIVE_KEYS = {
    "api_key",
    "openai_api_key",
    "authorization",
    "secret",
    "password",
    "token",
    "webhook_url",
}


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact sensitive information from log entries.

    Redacts any field whose name contains one of SENSITIVE_KEYS
    (api keys, Authorization headers, secrets, passwords, bearer tokens,
    and delivery webhook URLs which embed credentials).
    """
    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            event_dict[key] = "REDACTED"

    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog for JSON output with correlation ID support.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance, optionally bound to a logger name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


def log_intervention_decision(
    logger: Any,
    user_id: str,
    should_intervene: bool,
    reason_codes: list[str],
    top_score: float | None = None,
    action_type: str | None = None,
    skipped_duplicates: int = 0,
) -> None:
    """Emit the single summary event for one policy evaluation.

    Only tags and scores are logged; message text never reaches the log.
    """
    logger.info(
        "intervention_decision",
        user_id=user_id,
        should_intervene=should_intervene,
        reason_codes=reason_codes,
        top_score=round(top_score, 4) if top_score is not None else None,
        action_type=action_type,
        skipped_duplicates=skipped_duplicates,
    )
