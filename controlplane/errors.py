"""Error hierarchy for the liveness service.

Every error raised by ``controlplane`` inherits from ``ControlPlaneError``.
"""

from __future__ import annotations

__all__ = [
    "BindError",
    "ConfigError",
    "ControlPlaneError",
    "ForcedShutdownError",
    "ServeError",
    "WriteError",
]


class ControlPlaneError(Exception):
    """Base error for all controlplane operations."""


class ConfigError(ControlPlaneError):
    """Invalid value in the environment or on the command line."""


class BindError(ControlPlaneError):
    """The listener could not be established (address in use, permission denied)."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(f"cannot bind {host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class WriteError(ControlPlaneError):
    """A response could not be written to the client."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"failed to write response for {path}: {reason}")
        self.path = path
        self.reason = reason


class ForcedShutdownError(ControlPlaneError):
    """The drain deadline elapsed with requests still in flight."""

    def __init__(self, deadline: float, abandoned: int) -> None:
        super().__init__(
            f"drain deadline of {deadline:g}s exceeded; {abandoned} request(s) forcibly terminated"
        )
        self.deadline = deadline
        self.abandoned = abandoned


class ServeError(ControlPlaneError):
    """The background serving task ended without being asked to."""
