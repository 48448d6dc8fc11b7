"""Logging utilities for the dnsproof package."""

import logging
import time
from contextvars import ContextVar, Token

# NullHandler on the package logger; applications configure their own handlers
_root = logging.getLogger("dnsproof")
_root.addHandler(logging.NullHandler())

# Domain of the authorization run active in the current context
_current_domain: ContextVar[str | None] = ContextVar("current_domain", default=None)


def set_domain(domain: str | None) -> Token[str | None]:
    """Set the domain being authorized for logging context.

    Args:
        domain: Domain name of the current run.

    Returns:
        Token to reset the context.
    """
    return _current_domain.set(domain)


def reset_domain(token: Token[str | None]) -> None:
    """Restore the domain context saved in ``token``."""
    _current_domain.reset(token)


def get_domain_extra() -> dict[str, str]:
    """Get domain info for log extra fields.

    Returns:
        ``{"domain": ...}`` while a run is active, otherwise an empty dict.
    """
    domain = _current_domain.get()
    if domain is None:
        return {}
    return {"domain": domain}


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the dnsproof namespace.

    Args:
        name: The module name (typically __name__).
    """
    return logging.getLogger(name)


def configure(level: str | int = "INFO") -> None:
    """Configure root logging for command-line and Lambda entry points.

    Library code never calls this.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("dnsproof").setLevel(level)


class Timer:
    """Context manager for timing operations.

    Usage:
        with Timer() as t:
            client.init()
        logger.info("Client ready", extra={"elapsed_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.elapsed_ms: float = 0
        self._start: float = 0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = round((time.perf_counter() - self._start) * 1000, 2)
