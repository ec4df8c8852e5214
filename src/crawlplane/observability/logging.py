"""
Configures structured logging for the application using structlog.
"""
from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any, Dict, List

import structlog

if TYPE_CHECKING:
    from crawlplane.config.config import MonitoringConfig


def add_correlation_id(logger: logging.Logger, method_name: str, event_dict: Dict[Any, Any]) -> Dict[Any, Any]:
    """
    Adds a correlation_id to the log record if it's bound in the context.
    The consumer binds one per delivery.
    """
    ctx = structlog.contextvars.get_contextvars()
    if "correlation_id" in ctx:
        event_dict["correlation_id"] = ctx["correlation_id"]
    return event_dict


def configure_logging(config: MonitoringConfig) -> None:
    """
    Sets up structlog to handle all logging for the application.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    log_renderer: Any
    if config.log_file:
        # Structured JSON logging for production/file output
        log_renderer = structlog.processors.JSONRenderer()
        handler: logging.Handler = logging.FileHandler(config.log_file)
    else:
        log_renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=log_renderer,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(config.log_level.upper())

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("crawlplane.logging")
    logger.info("Logging configured", level=config.log_level, output=config.log_file or "console")
