"""Top-level package for the mailbox relay service."""

from __future__ import annotations

from typing import Any

__version__ = "0.8.0"


def build_http_app(*args: Any, **kwargs: Any) -> Any:
    """Lazily import and build the FastAPI app to avoid heavy module import costs."""
    from .http import build_http_app as _build_http_app
    return _build_http_app(*args, **kwargs)

__all__ = ["__version__", "build_http_app"]
