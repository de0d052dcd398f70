"""Observability package for structured logging.

Provides:
- configure_structlog: Environment-aware structlog setup (JSON in
  production, console rendering otherwise)

Prometheus metrics live in src.app.core.monitoring.
"""

from __future__ import annotations


def __getattr__(name: str):
    if name == "configure_structlog":
        from src.app.observability.logging import configure_structlog
        return configure_structlog
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "configure_structlog",
]
