"""
Air node — the foreground process that ties the pieces together.

Startup sequence (each phase fails with StartupError or its own error):
    1. load_config       — defaults < config file < environment, validated
    2. acquire_lock      — one server per host (LockConflict -> exit 1)
    3. init_supervisor   — bind the websocket listener (RestartLimitExceeded -> exit 1)
    4. open_session      — local graph replica + links to configured peers
    5. register_identity — publish air/nodes/<name>, start refresh tasks
    6. start_discovery   — manual, DHT, multicast and DNS strategies

SIGINT/SIGTERM release the lock at once and trigger a graceful stop that
cancels every scheduled task.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
from typing import Any, Callable, Mapping

import websockets

from air import __version__
from air.config import ConfigStore, validate
from air.lock import LockConflict, LockError, LockManager
from air.p2p.discovery import PeerDiscoveryEngine
from air.p2p.graph import GraphListener, GraphSession, open_session, serve_listener
from air.p2p.registry import PeerRegistry, PublishError
from air.p2p.scheduler import Scheduler
from air.p2p.supervisor import RestartLimitExceeded, ServerSupervisor

log = logging.getLogger(__name__)

LOCK_OWNER = "air-peer"


class StartupError(Exception):
    """A startup phase failed."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(f"{phase}: {message}")


class AirNode:
    """An Air peer: listener, identity publication and discovery.

    Usage:
        node = AirNode(port=8765)
        exit_code = await node.run()
    """

    def __init__(
        self,
        store: ConfigStore | None = None,
        environ: Mapping[str, str] | None = None,
        port: int | None = None,
        environment: str | None = None,
        serve: Callable[..., Any] = websockets.serve,
        ip_resolver: Callable[..., Any] | None = None,
    ) -> None:
        env = dict(os.environ if environ is None else environ)
        if environment:
            env["AIR_ENV"] = environment
        self.environ = env
        self.store = store or ConfigStore(environ=env)
        self.port_override = port
        self._serve = serve
        self._ip_resolver = ip_resolver

        self.scheduler = Scheduler()
        self.lock: LockManager | None = None
        self.listener: GraphListener | None = None
        self.supervisor: ServerSupervisor | None = None
        self.session: GraphSession | None = None
        self.registry: PeerRegistry | None = None
        self.discovery: PeerDiscoveryEngine | None = None

        self.exit_code = 0
        self._shutdown_event: asyncio.Event | None = None
        self._stopped = False

    # --- Startup phases ---

    def load_config(self) -> None:
        config = self.store.load()
        if self.port_override:
            config.active.port = self.port_override
        errors = validate(config)
        if errors:
            raise StartupError("config", "; ".join(errors))
        log.info(
            "Loaded %s config for %s (port %d)",
            config.environment, config.node_name, config.active.port,
        )

    def acquire_lock(self) -> None:
        """Raises LockConflict when another live instance holds the lock."""
        self.lock = LockManager.from_paths(self.store.paths, self.environ)
        try:
            self.lock.require(LOCK_OWNER, port=self.store.config.active.port)
        except LockError as e:
            raise StartupError("lock", str(e)) from e
        atexit.register(self.lock.release, LOCK_OWNER)

    async def init_supervisor(self) -> None:
        """Raises RestartLimitExceeded when the listener never comes up."""
        config = self.store.config
        self.listener = serve_listener(config.active.www or None)
        self.supervisor = ServerSupervisor(
            self.store,
            self.listener.handler,
            serve=self._serve,
            process_request=self.listener.process_request,
            on_fatal=self.fatal,
        )
        await self.supervisor.start()

    async def open_session(self) -> None:
        paths = self.store.paths
        try:
            await asyncio.to_thread(paths.ensure)
            self.session = await open_session(
                self.listener,
                self.store.config.active.peers,
                paths.shared_data_dir,
                timeout=self.store.config.active.discovery.limits.timeout,
            )
        except OSError as e:
            raise StartupError("session", str(e)) from e

    async def register_identity(self) -> None:
        self.registry = PeerRegistry(
            self.session,
            self.store,
            self.scheduler,
            tls=bool(self.supervisor and self.supervisor.tls),
            ip_resolver=self._ip_resolver,
        )
        try:
            await self.registry.register()
        except PublishError as e:
            raise StartupError("register", str(e)) from e

    async def start_discovery(self) -> None:
        self.discovery = PeerDiscoveryEngine(self.store, self.scheduler, session=self.session)
        await self.discovery.start()

    async def start(self) -> None:
        """Run the startup sequence in order."""
        self._shutdown_event = asyncio.Event()
        log.info("Starting Air %s", __version__)
        self.load_config()
        self.acquire_lock()
        self._install_signal_handlers()
        await self.init_supervisor()
        await self.open_session()
        await self.register_identity()
        await self.start_discovery()
        log.info("Air node %s is up", self.store.config.node_name)

    # --- Runtime ---

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig_name in ("SIGINT", "SIGTERM"):
            sig = getattr(signal, sig_name, None)
            if sig:
                try:
                    loop.add_signal_handler(sig, self._signal_shutdown)
                except NotImplementedError:
                    # Windows doesn't support add_signal_handler
                    pass

    def _signal_shutdown(self) -> None:
        log.info("Received shutdown signal")
        if self.lock:
            self.lock.release(LOCK_OWNER)
        self.shutdown()

    def shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def fatal(self, exc: BaseException) -> None:
        """The listener cannot be recovered: stop with exit code 1."""
        log.critical("Fatal: %s", exc)
        self.exit_code = 1
        self.shutdown()

    async def wait(self) -> None:
        if self._shutdown_event is not None:
            await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Cancel scheduled work, close the session and listener, release the lock."""
        if self._stopped:
            return
        self._stopped = True
        log.info("Shutting down Air node...")
        if self.discovery:
            await self.discovery.stop()
        await self.scheduler.cancel_all()
        if self.session:
            await self.session.close()
        if self.supervisor:
            await self.supervisor.stop()
        if self.lock:
            self.lock.release(LOCK_OWNER)
        log.info("Air node stopped")

    async def run(self) -> int:
        """Start, serve until shutdown, stop. Returns the process exit code."""
        try:
            await self.start()
        except LockConflict as e:
            log.error("%s", e)
            return 1
        except (RestartLimitExceeded, StartupError) as e:
            log.error("Startup failed: %s", e)
            await self.stop()
            return 1
        except Exception as e:
            log.exception("Startup failed unexpectedly: %s", e)
            await self.stop()
            return 1
        try:
            await self.wait()
        finally:
            await self.stop()
        return self.exit_code

    def status(self) -> dict[str, Any]:
        config = self.store.config
        return {
            "version": __version__,
            "name": config.node_name,
            "environment": config.environment,
            "port": config.active.port,
            "listener": self.supervisor.status() if self.supervisor else None,
            "registry": self.registry.status() if self.registry else None,
            "discovery": self.discovery.status() if self.discovery else None,
            "tasks": self.scheduler.names,
            "peers": list(config.active.peers),
            "connected": self.session.connected if self.session else [],
        }


def describe_status(store: ConfigStore, environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Status of the host's Air instance as seen from the lock and config files."""
    lock = LockManager.from_paths(store.paths, environ)
    state, record = lock.inspect()
    config = store.config
    return {
        "version": __version__,
        "lock": state.value,
        "pid": record.pid if record else None,
        "owner": record.owner if record else None,
        "started_at": record.started_at if record else None,
        "running_port": record.port if record else None,
        "name": config.node_name,
        "environment": config.environment,
        "port": config.active.port,
        "domain": config.active.domain,
        "peers": list(config.active.peers),
        "paths": store.paths.as_dict(),
    }


def run_node(
    port: int | None = None,
    environment: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    """Entry point for ``air start``. Runs the node in foreground."""
    env = os.environ if environ is None else environ
    level = getattr(logging, env.get("AIR_LOG_LEVEL", "INFO").upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    node = AirNode(environ=env, port=port, environment=environment)
    try:
        return asyncio.run(node.run())
    except KeyboardInterrupt:
        print("\nShutting down...")
        if node.lock:
            node.lock.release(LOCK_OWNER)
        return 0
