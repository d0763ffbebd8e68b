"""Shared logging helpers for the gateway and the player client."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from typing import Any, Callable, TypeVar

R = TypeVar("R")

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_DEFAULT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_VALID_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY_VALUES


def resolve_level(
    *,
    default_level: str = "INFO",
    log_level_env: str = "LOG_LEVEL",
    debug_env: str = "DEBUG",
) -> int:
    """Pick a level from LOG_LEVEL, then DEBUG, then the given default."""
    configured = os.getenv(log_level_env, "").strip().lower()
    if configured:
        return _VALID_LEVEL_NAMES.get(configured, logging.INFO)

    if _is_truthy(os.getenv(debug_env)):
        return logging.DEBUG

    return _VALID_LEVEL_NAMES.get(default_level.strip().lower(), logging.INFO)


def configure_service_logger(
    service_name: str,
    *,
    default_level: str = "INFO",
    fmt: str = _DEFAULT_FORMAT,
) -> logging.Logger:
    """Configure root handlers once and return the service's named logger."""
    level = resolve_level(default_level=default_level)
    logging.basicConfig(level=level, format=fmt)
    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    return logger


def module_logger(service_name: str, module: str) -> logging.Logger:
    """Child logger such as ``stream-gateway.providers``."""
    return logging.getLogger(f"{service_name}.{module}")


def with_log_context(logger: logging.Logger, **context: Any) -> logging.LoggerAdapter:
    """Prefix every record with ``key=value`` pairs from *context*."""
    return _ContextAdapter(logger, context)


class _ContextAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        prefix = " ".join(f"{k}={v}" for k, v in self.extra.items() if v is not None)
        return (f"[{prefix}] {msg}" if prefix else msg), kwargs


def _wrap(
    func: Callable[..., R],
    before: Callable[[], Any],
    on_success: Callable[[Any], None],
    on_error: Callable[[Any], None],
) -> Callable[..., R]:
    if asyncio.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> R:
            token = before()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                on_error(token)
                raise
            on_success(token)
            return result

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> R:
        token = before()
        try:
            result = func(*args, **kwargs)
        except Exception:
            on_error(token)
            raise
        on_success(token)
        return result

    return wrapper


def log_exceptions(
    logger: logging.Logger,
    message: str,
    *,
    level: int = logging.ERROR,
) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """Decorator that logs unexpected exceptions and re-raises."""

    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        return _wrap(
            func,
            before=lambda: None,
            on_success=lambda _: None,
            on_error=lambda _: logger.log(level, message, exc_info=True),
        )

    return decorator


def log_timing(
    logger: logging.Logger,
    operation: str,
    *,
    level: int = logging.DEBUG,
) -> Callable[[Callable[..., R]], Callable[..., R]]:
    """Decorator that logs how long a sync or async call took."""

    def elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000.0

    def decorator(func: Callable[..., R]) -> Callable[..., R]:
        return _wrap(
            func,
            before=time.perf_counter,
            on_success=lambda start: logger.log(
                level, "%s completed in %.2fms", operation, elapsed_ms(start)
            ),
            on_error=lambda start: logger.warning(
                "%s failed after %.2fms", operation, elapsed_ms(start), exc_info=True
            ),
        )

    return decorator
