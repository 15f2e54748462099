"""Structured logging configuration for ecr-deploy.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- A run ID bound to every event of one pipeline run
- Redaction of secret-valued fields before rendering

The logging system integrates structlog with Python's stdlib logging
for handlers (file rotation), while using structlog exclusively for
actual log emission.

Example usage:
    >>> from ecr_deploy.config import LoggingConfig
    >>> from ecr_deploy.logging import setup_logging, get_logger, bind_run_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="console"))
    >>> bind_run_context(run_id="9f1c", repository="org/repo")
    >>> get_logger(__name__).info("build_started", tags=3)
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from ecr_deploy.config import LoggingConfig

_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)

# Event keys whose values must never reach the log output
SECRET_KEYS = frozenset(
    {
        "password",
        "secret",
        "secret_access_key",
        "token",
        "github_ssh_key",
        "private_key",
    }
)

REDACTED = "***"


def add_run_id(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add run_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with run_id added if available
    """
    run_id = _run_id.get()
    if run_id is not None:
        event_dict["run_id"] = run_id
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace the values of secret-named keys with a placeholder."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def set_run_id(run_id: str | None) -> None:
    """Set run ID for current context."""
    _run_id.set(run_id)


def get_run_id() -> str | None:
    """Get current run ID from context."""
    return _run_id.get()


def bind_run_context(run_id: str, repository: str) -> None:
    """Bind run and repository context to all subsequent logs.

    Args:
        run_id: Identifier of the current pipeline run
        repository: Repository the image is built for
    """
    set_run_id(run_id)
    structlog.contextvars.bind_contextvars(repository=repository)


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Sets up JSON or console rendering, optional file rotation, timestamps,
    log level and logger name, the run ID processor, and secret redaction.

    Args:
        config: Logging configuration from DeployConfig
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        # stdout is interleaved with docker output in the CI log
        handler = logging.StreamHandler(sys.stdout)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            add_run_id,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance
    """
    return structlog.get_logger(name)
