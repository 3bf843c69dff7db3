"""Shared plumbing for the annotation and CI integrations."""
from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

import httpx

logger = logging.getLogger("vista")

# Callables injected into the integration components.
Clock = Callable[[], float]
ClientFactory = Callable[[], httpx.AsyncClient]


class IntegrationError(RuntimeError):
    """Base class for failures talking to the annotation or CI systems."""


class NotConfiguredError(IntegrationError):
    """Raised when credentials for a remote system are missing."""


class AuthenticationFailedError(IntegrationError):
    """Raised when the remote login call does not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailableError(IntegrationError):
    """Raised for a non-2xx answer on a secondary read."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ------------------------------------------------------------
# Logging categories
#   LOG_ALL=0 disables everything unless a category is enabled explicitly.
#   LOG_CVAT, LOG_JENKINS, LOG_PROCESSING, LOG_SETTINGS, LOG_BROWSE override it.
# ------------------------------------------------------------
def log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def log(cat: str, msg: str, *args, level: int = logging.INFO) -> None:
    """Emit a log line prefixed with its category, e.g. ``[cvat] ...``."""
    if not log_enabled(cat):
        return
    logger.log(level, f"[{cat}] {msg}", *args)


def env_int(name: str, default: int) -> int:
    try:
        v = os.environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        v = os.environ.get(name)
        return float(v) if v is not None and str(v).strip() != "" else float(default)
    except ValueError:
        return float(default)


def now_ms() -> float:
    return time.time() * 1000.0


def http_timeout() -> float:
    return max(1.0, env_float("INTEGRATION_HTTP_TIMEOUT", 10.0))


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=http_timeout(), follow_redirects=False)


def truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit]


__all__ = [
    "AuthenticationFailedError",
    "ClientFactory",
    "Clock",
    "IntegrationError",
    "NotConfiguredError",
    "RemoteUnavailableError",
    "default_client_factory",
    "env_float",
    "env_int",
    "http_timeout",
    "log",
    "log_enabled",
    "logger",
    "now_ms",
    "truncate",
]
