"""Server lifecycle: bind, serve in the background, wait for a signal, drain.

``LifecycleManager`` owns every piece of process-wide state (listening socket,
uvicorn server, serving thread, signal handlers) so the whole lifecycle can be
driven in-process. Termination arrives through a ``TerminationToken``; OS
signals are only one of its producers.

States move strictly forward::

    STARTING -> SERVING -> DRAINING -> STOPPED

"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import math
import signal
import socket
import threading
import time
from types import FrameType
from typing import Any

import uvicorn
from fastapi import FastAPI

from controlplane.app import create_app
from controlplane.config import Settings
from controlplane.errors import BindError, ForcedShutdownError, ServeError
from controlplane.tracking import InFlightTracker

__all__ = [
    "SERVE_EXITED",
    "SHUTDOWN_REQUESTED",
    "TERMINATION_SIGNALS",
    "LifecycleManager",
    "ServerState",
    "TerminationToken",
]

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)

SERVE_EXITED = "serve-exited"
SHUTDOWN_REQUESTED = "shutdown"

_BACKLOG = 2048
_POLL_INTERVAL = 0.01
# Longest uninterrupted block in the main thread while waiting for a signal.
_WAIT_SLICE = 0.5
# Slack after the drain deadline for aborted connections to unwind and the
# lifespan shutdown to run.
_JOIN_GRACE = 1.0


class ServerState(enum.Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class TerminationToken:
    """Set-once cancellation channel carrying the reason for termination."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None

    def cancel(self, reason: str) -> bool:
        """Request termination. Returns ``False`` if it was already requested."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
        self._event.set()
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def wait(self, timeout: float | None = None) -> str | None:
        """Block until cancelled; return the reason, or ``None`` on timeout."""
        expires = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if expires is None else expires - time.monotonic()
            if remaining is not None and remaining <= 0:
                return self.reason
            step = _WAIT_SLICE if remaining is None else min(_WAIT_SLICE, remaining)
            if self._event.wait(step):
                return self.reason


def _bind(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(_BACKLOG)
    except OSError as exc:
        sock.close()
        raise BindError(host, port, exc.strerror or str(exc)) from exc
    return sock


class LifecycleManager:
    """Own the listener from bind to exit and keep shutdown bounded."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        app: FastAPI | None = None,
        token: TerminationToken | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.app = app if app is not None else create_app(self.settings)
        self.token = token or TerminationToken()
        self.tracker = InFlightTracker(self.app)

        self._state = ServerState.STARTING
        self._state_lock = threading.Lock()
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False

        self._socket: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._serve_error: BaseException | None = None
        self._previous_handlers: dict[int, Any] = {}

    @property
    def state(self) -> ServerState:
        with self._state_lock:
            return self._state

    @property
    def address(self) -> tuple[str, int] | None:
        """The bound ``(host, port)``; ephemeral ports are resolved."""
        return self._address

    @property
    def serve_error(self) -> BaseException | None:
        """Why the serving task ended on its own, if it did."""
        return self._serve_error

    def start(self, address: tuple[str, int] | None = None) -> tuple[str, int]:
        """Bind the listener and serve in a background thread.

        Returns once uvicorn is accepting connections.

        Raises:
            BindError: The address is in use or unavailable.
            ServeError: The server died or stalled during startup.

        """
        if self._thread is not None or self.state is not ServerState.STARTING:
            raise RuntimeError("LifecycleManager.start() may only be called once")

        host, port = address or (self.settings.host, self.settings.port)
        try:
            self._socket = _bind(host, port)
        except BindError as exc:
            logger.error("%s", exc)
            self._set_state(ServerState.STOPPED)
            raise
        bound = self._socket.getsockname()
        self._address = (bound[0], bound[1])

        config = uvicorn.Config(
            self.tracker,
            log_config=None,
            log_level=self.settings.log_level.lower(),
            access_log=self.settings.access_log,
            lifespan="on",
            timeout_graceful_shutdown=None,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._serve, name="controlplane-serve", daemon=True
        )
        self._thread.start()
        self._wait_started()

        self._set_state(ServerState.SERVING)
        logger.info("listening on http://%s:%d", *self._address)
        return self._address

    def await_termination(self, timeout: float | None = None) -> str | None:
        """Block until termination is requested and return the reason.

        From the main thread this installs SIGINT/SIGTERM handlers that feed
        the token. Returns ``None`` if ``timeout`` elapses first.
        """
        if threading.current_thread() is threading.main_thread():
            self._install_signal_handlers()
        reason = self.token.wait(timeout)
        if reason is not None:
            logger.info("termination requested (%s)", reason)
        return reason

    def shutdown(self, deadline: float | None = None) -> None:
        """Stop accepting, then drain in-flight requests for up to ``deadline`` seconds.

        Only the first call does anything; later calls return once it is done
        and never extend the deadline.

        Raises:
            ForcedShutdownError: Requests were still running at the deadline;
                their connections were closed and the requests cancelled.

        """
        if deadline is None:
            deadline = self.settings.drain_deadline
        if not math.isfinite(deadline):
            raise ValueError(f"drain deadline must be finite, got {deadline}")
        with self._shutdown_lock:
            if self._shutdown_started:
                logger.debug("shutdown already performed; ignoring")
                return
            self._shutdown_started = True
            try:
                self._drain(deadline)
            finally:
                self._restore_signal_handlers()
                self._set_state(ServerState.STOPPED)

    def _drain(self, deadline: float) -> None:
        self.token.cancel(SHUTDOWN_REQUESTED)
        if self._thread is None or self._server is None:
            return
        if not self._thread.is_alive():
            logger.info("serving task already finished; nothing to drain")
            return

        started = time.monotonic()
        self._stop_accepting()
        self._set_state(ServerState.DRAINING)
        logger.info(
            "stopped accepting; draining %d in-flight request(s), deadline %gs",
            self.tracker.active,
            deadline,
        )

        self._server.should_exit = True
        self._thread.join(max(0.0, deadline - (time.monotonic() - started)))
        aborted = 0
        if self._thread.is_alive():
            aborted = self._abort_in_flight()
            self._thread.join(_JOIN_GRACE)
        if self._thread.is_alive():
            self._server.force_exit = True
            self._thread.join(_JOIN_GRACE)

        abandoned = max(aborted, self.tracker.cancelled or self.tracker.active)
        if abandoned or self._thread.is_alive():
            error = ForcedShutdownError(deadline, abandoned)
            logger.warning("%s", error)
            raise error
        logger.info("drained in %.2fs", time.monotonic() - started)

    def _stop_accepting(self) -> None:
        loop, server = self._loop, self._server
        if loop is None or server is None or loop.is_closed():
            return

        async def close_listeners() -> None:
            for listener in server.servers:
                listener.close()

        future = asyncio.run_coroutine_threadsafe(close_listeners(), loop)
        try:
            future.result(timeout=_JOIN_GRACE)
        except concurrent.futures.TimeoutError:
            logger.warning("serving loop did not close its listeners within %gs", _JOIN_GRACE)

    def _abort_in_flight(self) -> int:
        """Reset the remaining connections, then cancel their request tasks.

        Aborting first leaves uvicorn no transport to answer a cancelled request
        on, so the client sees the connection drop rather than an error page.
        Returns the number of cancelled tasks.
        """
        loop, server = self._loop, self._server
        if loop is None or server is None or loop.is_closed():
            return 0

        async def abort() -> int:
            connections = list(server.server_state.connections)
            if connections:
                logger.warning("drain deadline reached; aborting %d connection(s)", len(connections))
            for connection in connections:
                connection.transport.abort()
            # connection_lost callbacks run before the cancelled tasks resume.
            await asyncio.sleep(0)
            tasks = [task for task in server.server_state.tasks if not task.done()]
            for task in tasks:
                task.cancel()
            return len(tasks)

        coro = abort()
        try:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            # The loop closed after the serving thread finished on its own.
            coro.close()
            return 0
        try:
            return future.result(timeout=_JOIN_GRACE)
        except concurrent.futures.TimeoutError:
            logger.warning("serving loop did not abort connections within %gs", _JOIN_GRACE)
            return 0

    def _serve(self) -> None:
        try:
            asyncio.run(self._serve_async())
        except (Exception, SystemExit) as exc:
            self._serve_error = exc
            logger.exception("serving task failed")
        finally:
            if not self._shutdown_started:
                if self._serve_error is None:
                    self._serve_error = ServeError("server stopped without a shutdown request")
                self.token.cancel(SERVE_EXITED)

    async def _serve_async(self) -> None:
        if self._server is None or self._socket is None:
            raise RuntimeError("serving task started before the listener was bound")
        self._loop = asyncio.get_running_loop()
        await self._server.serve(sockets=[self._socket])

    def _wait_started(self) -> None:
        if self._server is None or self._thread is None:
            raise RuntimeError("no serving task to wait for")
        expires = time.monotonic() + self.settings.startup_timeout
        while not self._server.started:
            if not self._thread.is_alive():
                if self._socket is not None:
                    self._socket.close()
                self._set_state(ServerState.STOPPED)
                raise ServeError(f"server exited during startup: {self._serve_error}")
            if time.monotonic() >= expires:
                self._server.should_exit = True
                self._thread.join(_JOIN_GRACE)
                self._set_state(ServerState.STOPPED)
                raise ServeError(
                    f"server did not start within {self.settings.startup_timeout:g}s"
                )
            time.sleep(_POLL_INTERVAL)

    def _install_signal_handlers(self) -> None:
        if self._previous_handlers:
            return
        for sig in TERMINATION_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if not self.token.cancel(name):
            logger.info("received %s while already shutting down; ignoring", name)

    def _set_state(self, state: ServerState) -> None:
        with self._state_lock:
            previous, self._state = self._state, state
        if previous is not state:
            logger.info("state %s -> %s", previous.value, state.value)
