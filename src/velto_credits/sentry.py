"""Logging setup and Sentry error tracking for the credits subsystem."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from velto_credits.config import settings

if TYPE_CHECKING:
    from sentry_sdk.types import Event

# Type alias for Sentry event callbacks
EventCallback = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any] | None]

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "apikey", "credentials")


def configure_logging(
    service_name: str,
    log_level: int | None = None,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Configure stdlib logging and structlog together.

    Call once at application start, after init_sentry().

    Args:
        service_name: Name bound to the returned logger
        log_level: Minimum log level (defaults to LOG_LEVEL)
        json_format: JSON output (True) or console output (False). None picks
            console in development and JSON everywhere else.

    Returns:
        Configured structlog logger
    """
    if log_level is None:
        log_level = logging.getLevelNamesMapping().get(settings.LOG_LEVEL.upper(), logging.INFO)
    if json_format is None:
        json_format = not settings.is_development

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_sentry_context,
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def add_sentry_context(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor: log events become breadcrumbs, errors become Sentry events."""
    level = event_dict.get("level", "info")
    message = event_dict.get("event", "")

    standard_keys = {"event", "level", "timestamp", "logger"}
    extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

    sentry_sdk.add_breadcrumb(
        message=str(message),
        category="log",
        level=level,
        data=extra_data if extra_data else None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if isinstance(exc_info, tuple):
            sentry_sdk.capture_exception(exc_info[1])
        elif isinstance(exc_info, BaseException):
            sentry_sdk.capture_exception(exc_info)
        else:
            with sentry_sdk.isolation_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    str(message),
                    level="error" if method_name == "error" else "fatal",
                )

    return event_dict


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    enable_redis_tracing: bool = True
    additional_integrations: list[Any] = field(default_factory=list)
    before_send: EventCallback | None = None


def scrub_event(event: dict[str, Any]) -> dict[str, Any]:
    """Mask secret-looking keys in an event's extra context."""
    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                extra[key] = "[Filtered]"
    return event


def init_sentry(service_name: str, config: SentryConfig | None = None) -> bool:
    """Initialize Sentry.

    Returns:
        True if Sentry was initialized, False if no DSN was configured
    """
    cfg = config or SentryConfig(service_name=service_name)
    effective_dsn = cfg.dsn or settings.SENTRY_DSN
    if not effective_dsn:
        return False

    effective_env = cfg.environment or settings.ENVIRONMENT
    traces_rate = cfg.traces_sample_rate
    if traces_rate is None:
        traces_rate = (
            DEFAULT_TRACES_SAMPLE_RATE if effective_env == "production" else DEV_TRACES_SAMPLE_RATE
        )

    integrations: list[Any] = [
        HttpxIntegration(),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if cfg.enable_redis_tracing:
        integrations.append(RedisIntegration())
    integrations.extend(cfg.additional_integrations)

    def before_send(event: Event, hint: dict[str, Any]) -> Event | None:
        scrubbed = scrub_event(cast("dict[str, Any]", event))
        if cfg.before_send:
            return cast("Event | None", cfg.before_send(scrubbed, hint))
        return cast("Event", scrubbed)

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=cfg.release or f"{service_name}@{settings.APP_VERSION}",
        traces_sample_rate=traces_rate,
        integrations=integrations,
        before_send=before_send,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=service_name,
    )
    sentry_sdk.set_tag("service", service_name)
    return True


def capture_exception(
    error: BaseException,
    *,
    tags: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """Send an exception to Sentry with extra tags and context.

    Returns:
        The Sentry event ID, or None if not sent
    """
    with sentry_sdk.isolation_scope() as scope:
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)


def add_breadcrumb(
    message: str,
    *,
    category: str = "credits",
    level: str = "info",
    data: dict[str, Any] | None = None,
) -> None:
    """Record a breadcrumb for the next Sentry event."""
    sentry_sdk.add_breadcrumb(message=message, category=category, level=level, data=data)
