"""
Peer registry — this node's identity record in the shared graph.

Graph layout:
    air/nodes/<name>   — identity record (see NodeIdentity.to_record)
    air/ddns           — contents of <root>/ddns.json, when present

Recurring work started by register():
    heartbeat     every 60s   — {"alive": <ms>}
    ddns-refresh  every 5min  — republish the local DDNS file
    ip-refresh    every 5min  — {"newIP": ..., "timestamp": ...} when the IP changed
    config-sync   every 1h    — pull the shared config (only with a sync URL)

Failures inside a recurring task are logged by the scheduler and the
task runs again on its next tick.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

import aiohttp

from air import (
    CONFIG_SYNC_INTERVAL_SECS,
    DDNS_INTERVAL_SECS,
    GRAPH_ROOT,
    HEARTBEAT_INTERVAL_SECS,
    IP_INTERVAL_SECS,
    IP_SERVICE_URL,
    PEER_TIMEOUT_SECS,
)
from air.config import ConfigStore
from air.p2p.graph import GraphError
from air.p2p.scheduler import Scheduler

log = logging.getLogger(__name__)

DDNS_PATH = f"{GRAPH_ROOT}/ddns"


class PublishError(Exception):
    """A record could not be written to the shared graph."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def node_path(name: str) -> str:
    return f"{GRAPH_ROOT}/nodes/{name}"


@dataclass
class NodeIdentity:
    """What other nodes learn about us."""
    name: str
    domain: str | None
    https: bool
    http: bool
    port: int
    peers: list[str] = field(default_factory=list)
    since: int = 0
    alive: int = 0
    new_ip: str | None = None

    def to_record(self) -> dict[str, Any]:
        # Graph fields are scalars, so the peer list travels as JSON text
        return {
            "name": self.name,
            "domain": self.domain,
            "https": self.https,
            "http": self.http,
            "port": self.port,
            "peers": json.dumps(self.peers),
            "since": self.since,
            "alive": self.alive,
            "newIP": self.new_ip,
        }


async def fetch_public_ip(url: str = IP_SERVICE_URL, timeout: float = PEER_TIMEOUT_SECS) -> str:
    """Ask an external service for our public IP address."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as http:
            async with http.get(url) as response:
                if response.status != 200:
                    raise PublishError(f"IP lookup failed: HTTP {response.status} from {url}")
                data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise PublishError(f"IP lookup failed: {e}") from e
    ip = data.get("ip") if isinstance(data, dict) else None
    if not ip or not isinstance(ip, str):
        raise PublishError(f"IP lookup returned no address: {data!r}")
    return ip


class PeerRegistry:
    """Publishes and refreshes the node identity record.

    Usage:
        registry = PeerRegistry(session, store, scheduler, tls=True)
        await registry.register()      # raises PublishError on failure
    """

    def __init__(
        self,
        session: Any,
        store: ConfigStore,
        scheduler: Scheduler,
        tls: bool = False,
        ip_resolver: Callable[[], Awaitable[str]] | None = None,
        ddns_path: Path | None = None,
    ) -> None:
        self.session = session
        self.store = store
        self.scheduler = scheduler
        self.tls = tls
        self.ip_resolver = ip_resolver or fetch_public_ip
        self.ddns_path = Path(ddns_path) if ddns_path else store.paths.ddns_file
        self.since = 0
        self.last_ip: str | None = None
        self.last_alive = 0
        self.registered = False

    @property
    def path(self) -> str:
        return node_path(self.store.config.node_name)

    def identity(self) -> NodeIdentity:
        config = self.store.config
        env = config.active
        return NodeIdentity(
            name=config.node_name,
            domain=env.domain,
            https=self.tls,
            http=not self.tls,
            port=env.port,
            peers=list(env.peers),
            since=self.since,
            alive=self.last_alive,
            new_ip=self.last_ip,
        )

    async def _publish(self, path: str, record: dict[str, Any]) -> None:
        try:
            await self.session.put(path, record)
        except (GraphError, OSError) as e:
            raise PublishError(f"Failed to publish {path}: {e}") from e

    async def register(self) -> NodeIdentity:
        """Publish the identity record once and start the refresh tasks."""
        self.since = self.last_alive = _now_ms()
        identity = self.identity()
        await self._publish(self.path, identity.to_record())
        self.registered = True
        log.info("Registered node %s at %s", identity.name, self.path)

        self.scheduler.every("heartbeat", HEARTBEAT_INTERVAL_SECS, self.heartbeat)
        self.scheduler.every("ddns-refresh", DDNS_INTERVAL_SECS, self.ddns_refresh)
        self.scheduler.every("ip-refresh", IP_INTERVAL_SECS, self.ip_refresh)
        if self.store.config.sync:
            self.scheduler.every("config-sync", CONFIG_SYNC_INTERVAL_SECS, self.sync_config)
        return identity

    async def heartbeat(self) -> None:
        alive = _now_ms()
        await self._publish(self.path, {"alive": alive})
        self.last_alive = alive
        log.debug("Heartbeat %d", alive)

    def _read_ddns(self) -> dict[str, Any] | None:
        try:
            data = json.loads(self.ddns_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable DDNS file %s: %s", self.ddns_path, e)
            return None
        if not isinstance(data, dict) or not data:
            return None
        return data

    async def ddns_refresh(self) -> bool:
        """Publish the local DDNS file. Returns False when there is nothing to send."""
        data = await asyncio.to_thread(self._read_ddns)
        if data is None:
            return False
        await self._publish(DDNS_PATH, data)
        log.debug("Published DDNS record (%d keys)", len(data))
        return True

    async def ip_refresh(self) -> bool:
        """Publish our public IP if it changed. Returns True when published."""
        ip = await self.ip_resolver()
        if ip == self.last_ip:
            return False
        await self._publish(self.path, {"newIP": ip, "timestamp": _now_ms()})
        log.info("Public IP is now %s (was %s)", ip, self.last_ip or "unknown")
        self.last_ip = ip
        return True

    async def sync_config(self) -> bool:
        return await self.store.sync_remote()

    def status(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "registered": self.registered,
            "since": self.since,
            "alive": self.last_alive,
            "ip": self.last_ip,
        }
