"""Structured Logging Configuration for the LLM Control Plane.

Uses structlog for consistent JSON log output. Proxy secrets (``sk-...``)
are masked both by key name and by value before rendering.
"""

import logging
import re
import sys
from typing import Any, Literal

import structlog
from structlog.types import Processor

from .config import settings

# Matches proxy-issued secrets anywhere inside a rendered string
_SECRET_VALUE_PATTERN = re.compile(r"sk-[A-Za-z0-9_\-]{8,}")


class SensitiveDataMasker:
    """Processor to mask sensitive data in log output."""

    def __init__(self, patterns: list[str], mask_value: str = "[REDACTED]"):
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.mask_value = mask_value

    def __call__(
        self, logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        if not settings.LOG_MASKING_ENABLED:
            return event_dict

        return self._mask_dict(event_dict)

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return _SECRET_VALUE_PATTERN.sub(
                lambda m: m.group(0)[:7] + "..." + self.mask_value, value
            )
        if isinstance(value, dict):
            return self._mask_dict(value)
        if isinstance(value, list):
            return [self._mask_value(v) for v in value]
        return value

    def _mask_dict(self, d: dict[str, Any]) -> dict[str, Any]:
        """Recursively mask sensitive keys and secret-looking values."""
        result = {}
        for key, value in d.items():
            if any(pattern.search(str(key)) for pattern in self.patterns):
                result[key] = self.mask_value
            else:
                result[key] = self._mask_value(value)
        return result


class ComponentLevelFilter(logging.Filter):
    """Filter that applies per-component log levels."""

    def __init__(self, component_levels: dict[str, str], default_level: str = "INFO"):
        super().__init__()
        self.component_levels = {
            name: getattr(logging, level.upper(), logging.INFO)
            for name, level in component_levels.items()
        }
        self.default_level = getattr(logging, default_level.upper(), logging.INFO)

    def filter(self, record: logging.LogRecord) -> bool:
        logger_name = record.name
        level = self.default_level

        if logger_name in self.component_levels:
            level = self.component_levels[logger_name]
        else:
            # Longest matching parent wins
            best = ""
            for component, component_level in self.component_levels.items():
                if logger_name.startswith(component + ".") and len(component) > len(best):
                    best = component
                    level = component_level

        return record.levelno >= level


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add application context to all log entries."""
    event_dict.setdefault("component", "llm-control-plane")
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def configure_logging(
    log_level: str = None,
    log_format: Literal["json", "text"] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" for production, "text" for development)
    """
    level = log_level or settings.LOG_LEVEL
    fmt = log_format or settings.LOG_FORMAT

    component_levels = settings.log_components_dict

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Allow all, filter per-component
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(ComponentLevelFilter(component_levels, default_level=level))
    root_logger.addHandler(handler)

    noisy_loggers = [
        "httpcore",
        "httpx",
        "asyncio",
        "sqlalchemy.engine",
        "aiosqlite",
    ]
    for logger_name in noisy_loggers:
        noisy_logger = logging.getLogger(logger_name)
        log_level_for_logger = component_levels.get(logger_name, "WARNING")
        noisy_logger.setLevel(getattr(logging, log_level_for_logger.upper(), logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_app_context,
    ]

    if settings.LOG_MASKING_ENABLED:
        shared_processors.append(SensitiveDataMasker(settings.log_masking_patterns_list))

    if fmt == "json":
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Example:
        from llm_control_plane.logging_config import get_logger
        logger = get_logger(__name__)
        logger.info("Model synced", model_id="gpt-4o")
    """
    return structlog.get_logger(name)


def bind_context(**kwargs) -> None:
    """Bind context variables (request_id, user_id, ...) to subsequent log messages."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
