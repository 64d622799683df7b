"""
Server supervisor — binds the websocket listener and keeps it up.

State machine:
    IDLE -> BINDING -> LISTENING -> (FAILED -> BINDING)* -> TERMINATED

Restart policy:
    - "address in use": bump the configured port by one, persist, restart
    - any other bind error, or the listener closing on its own: restart
      at the same port
    - at most ``max_restarts`` consecutive restarts, ``restart_delay``
      seconds apart; a successful bind resets the counter
    - past the limit RestartLimitExceeded is raised (startup) or handed
      to ``on_fatal`` (listener died while running)
"""

from __future__ import annotations

import asyncio
import errno
import logging
import ssl
from enum import Enum
from typing import Any, Callable

import websockets

from air import GRAPH_MAX_MESSAGE, MAX_RESTARTS, RESTART_DELAY_SECS
from air.config import ConfigError, ConfigStore, TLSMaterial

log = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    IDLE = "idle"
    BINDING = "binding"
    LISTENING = "listening"
    FAILED = "failed"
    TERMINATED = "terminated"


class ListenerError(Exception):
    """The listener failed to bind or stopped unexpectedly."""


class PortInUse(ListenerError):
    """The configured port is already taken."""

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"Port {port} is already in use")


class RestartLimitExceeded(Exception):
    """The listener kept failing after every allowed restart."""


def make_ssl_context(tls: TLSMaterial) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(tls.cert, tls.key)
    return ctx


class ServerSupervisor:
    """Owns the network listener.

    Usage:
        supervisor = ServerSupervisor(store, listener.handler,
                                      process_request=listener.process_request,
                                      on_fatal=node.fatal)
        await supervisor.start()
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        store: ConfigStore,
        handler: Callable[..., Any],
        serve: Callable[..., Any] = websockets.serve,
        process_request: Callable[..., Any] | None = None,
        max_restarts: int = MAX_RESTARTS,
        restart_delay: float = RESTART_DELAY_SECS,
        on_transition: Callable[[SupervisorState, SupervisorState], Any] | None = None,
        on_fatal: Callable[[BaseException], Any] | None = None,
    ) -> None:
        self.store = store
        self.handler = handler
        self.process_request = process_request
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.on_transition = on_transition
        self.on_fatal = on_fatal
        self._serve = serve

        self.state = SupervisorState.IDLE
        self.restart_count = 0
        self.server: Any = None
        self.port: int | None = None
        self.tls = False
        self._watcher: asyncio.Task | None = None
        self._stopping = False

    def _transition(self, new: SupervisorState) -> None:
        old, self.state = self.state, new
        if old is new:
            return
        log.debug("Supervisor %s -> %s", old.value, new.value)
        if self.on_transition:
            try:
                self.on_transition(old, new)
            except Exception as e:
                log.warning("Transition callback failed: %s", e)

    # --- Binding ---

    async def init(self) -> None:
        """Close any previous listener and bind a new one.

        Raises PortInUse or ListenerError on failure.
        """
        await self._close_server()
        config = self.store.config
        host, port = config.host, config.active.port
        self._transition(SupervisorState.BINDING)

        tls = config.resolve_tls()
        try:
            ssl_ctx = make_ssl_context(tls) if tls else None
            self.server = await self._serve(
                self.handler,
                host,
                port,
                ssl=ssl_ctx,
                process_request=self.process_request,
                max_size=GRAPH_MAX_MESSAGE,
            )
        except OSError as e:
            self._transition(SupervisorState.FAILED)
            if e.errno == errno.EADDRINUSE:
                raise PortInUse(port) from e
            raise ListenerError(f"Failed to bind {host}:{port}: {e}") from e

        self.port = port
        self.tls = ssl_ctx is not None
        self.restart_count = 0
        self._transition(SupervisorState.LISTENING)
        log.info(
            "Listening on %s://%s:%d", "https" if self.tls else "http", host, port,
        )
        self._watcher = asyncio.get_running_loop().create_task(
            self._watch(self.server), name="supervisor-watch"
        )

    async def start(self) -> None:
        """Bind, recovering per the restart policy.

        Raises RestartLimitExceeded when every restart failed.
        """
        self._stopping = False
        try:
            await self.init()
        except ListenerError as e:
            await self._recover(e)

    async def handle_error(self, exc: ListenerError) -> None:
        """Apply the policy for one failure (port bump for PortInUse)."""
        if isinstance(exc, PortInUse):
            new_port = exc.port + 1
            log.warning("Port %d in use, moving to %d", exc.port, new_port)
            self.store.config.active.port = new_port
            try:
                await self.store.persist()
            except (OSError, ConfigError) as e:
                log.error("Could not save port %d, keeping it in memory: %s", new_port, e)
        else:
            log.error("Listener error: %s", exc)

    async def restart(self) -> None:
        """Wait the restart delay and bind again.

        Raises RestartLimitExceeded when the limit is reached.
        """
        if self.restart_count >= self.max_restarts:
            self._transition(SupervisorState.TERMINATED)
            raise RestartLimitExceeded(
                f"Listener failed after {self.max_restarts} restarts"
            )
        self.restart_count += 1
        log.info(
            "Restarting listener (%d/%d) in %.1fs",
            self.restart_count, self.max_restarts, self.restart_delay,
        )
        await asyncio.sleep(self.restart_delay)
        await self.init()

    async def _recover(self, exc: ListenerError) -> None:
        while True:
            await self.handle_error(exc)
            try:
                await self.restart()
                return
            except ListenerError as e:
                exc = e

    async def _watch(self, server: Any) -> None:
        """Restart the listener if it closes while we are not stopping."""
        await server.wait_closed()
        if self._stopping or server is not self.server:
            return
        self._transition(SupervisorState.FAILED)
        try:
            await self._recover(ListenerError("Listener closed unexpectedly"))
        except Exception as e:
            # RestartLimitExceeded, or recovery itself broke: the node cannot serve
            log.critical("Listener recovery failed: %s", e)
            if self.on_fatal is None:
                raise
            self.on_fatal(e)

    # --- Shutdown ---

    async def _close_server(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None and watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        server, self.server = self.server, None
        if server is not None:
            server.close()
            await server.wait_closed()

    async def stop(self) -> None:
        """Close the listener for good."""
        self._stopping = True
        await self._close_server()
        self._transition(SupervisorState.TERMINATED)
        log.info("Listener stopped")

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "port": self.port,
            "tls": self.tls,
            "restarts": self.restart_count,
            "max_restarts": self.max_restarts,
        }
