"""structlog setup shared by the search service and the operator scripts.

Every log line carries the ``service`` name (plus any extra context passed to
``configure_logging``) through contextvars, so lines from the query engine,
the reindex workers and the embedding client can be correlated once shipped.

Output is JSON by default; ``log_format="console"`` switches to the colored
developer renderer.
"""

import logging
import sys
from enum import Enum
from typing import Any, Dict

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


def _enum_values(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Render enum fields (source types, outcomes) by value."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    **context: Any
) -> None:
    """Configure structlog and the stdlib root logger.

    Parameters
    - service_name: Bound to every line as ``service``
    - log_level: Root level name; unknown names fall back to ``INFO``
    - log_format: ``json`` or ``console``
    - context: Extra key/values bound to every line (e.g. ``env="prod"``)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
        _enum_values,
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, **context)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_performance(operation: str, duration_ms: float, **labels: Any) -> None:
    """Emit one timing line for ``operation`` (search, reindex, embed)."""
    get_logger("performance").info(
        f"Operation {operation} completed",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **labels
    )
