"""Liveness endpoint service for container orchestrators.

Binds an HTTP listener, answers ``/health`` with ``{"status": "ok"}``, and
drains in-flight requests within a bounded deadline on SIGINT/SIGTERM.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
