"""
Peer discovery — grows the active environment's peer list.

Strategies (each toggled under ``<env>.discovery.methods``):
    manual     — read a JSON array of addresses once at start
    dht        — seed the configured bootstrap addresses once; the graph's
                 own gossip does the rest
    multicast  — UDP beacon on the LAN group, every 30s, for as long as we run
    dns        — resolve <prefix>.<domain>, <prefix>-1.<domain>, ... every
                 5min; skipped entirely when no domain is configured

The peer list is an ordered set: addresses are only ever appended, never
removed. Every new address is handed to the graph session and persisted.

Multicast beacon (UDP JSON):
    {"service": "air", "id": "<random hex>", "name": "alpha", "port": 8765}
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import struct
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from air import APP_NAME, DNS_INTERVAL_SECS, MULTICAST_INTERVAL_SECS
from air.config import ConfigError, ConfigStore, DiscoveryConfig
from air.p2p.scheduler import Scheduler

log = logging.getLogger(__name__)

# Consecutive unresolvable numbered names before a DNS scan stops
DNS_MAX_MISSES = 3

MULTICAST_TASK = "discovery-multicast"
DNS_TASK = "discovery-dns"


class DiscoveryIOError(Exception):
    """A discovery strategy could not read or reach its source."""


# ---------------------------------------------------------------------------
# Multicast
# ---------------------------------------------------------------------------

def _multicast_socket(group: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError:
            pass
    try:
        sock.bind(("", port))
        mreq = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


class BeaconProtocol(asyncio.DatagramProtocol):
    """Receives beacons and reports ``<sender ip>:<port>`` for each foreign node."""

    def __init__(self, node_id: str, on_peer: Callable[[str], Any]) -> None:
        self.node_id = node_id
        self.on_peer = on_peer

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            msg = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return
        if not isinstance(msg, dict) or msg.get("service") != APP_NAME:
            return
        if msg.get("id") == self.node_id:
            return  # our own beacon looped back
        port = msg.get("port")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            return
        self.on_peer(f"{addr[0]}:{port}")

    def error_received(self, exc: Exception) -> None:
        log.debug("Multicast socket error: %s", exc)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

async def _resolve_ipv4(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, None, family=socket.AF_INET, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return []
    ips: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        if sockaddr[0] not in ips:
            ips.append(sockaddr[0])
    return ips


class PeerDiscoveryEngine:
    """Runs the enabled strategies and maintains the peer set.

    Usage:
        engine = PeerDiscoveryEngine(store, scheduler, session=session)
        await engine.start()
        await engine.add_peer("10.0.0.7:8765")
    """

    def __init__(
        self,
        store: ConfigStore,
        scheduler: Scheduler,
        session: Any = None,
        node_id: str | None = None,
        resolver: Callable[[str], Awaitable[list[str]]] | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.session = session
        self.node_id = node_id or uuid.uuid4().hex
        self.resolver = resolver or _resolve_ipv4
        self.started: list[str] = []
        self.found: dict[str, int] = {}
        self._pending: set[asyncio.Task] = set()
        self._transport: asyncio.DatagramTransport | None = None

    @property
    def discovery(self) -> DiscoveryConfig:
        return self.store.config.active.discovery

    @property
    def peers(self) -> list[str]:
        return self.store.config.active.peers

    @property
    def manual_path(self) -> Path:
        path = self.discovery.manual_path
        return Path(path) if path else self.store.paths.manual_peers_file

    # --- Peer set ---

    async def merge(self, addresses: Iterable[str], source: str = "manual") -> list[str]:
        """Append unseen addresses, notify the session, persist once."""
        peers = self.peers
        added: list[str] = []
        for address in addresses:
            address = address.strip() if isinstance(address, str) else ""
            if not address or address in peers:
                continue
            peers.append(address)
            added.append(address)
        if not added:
            return added

        self.found[source] = self.found.get(source, 0) + len(added)
        log.info("Discovered %d new peer(s) via %s: %s", len(added), source, ", ".join(added))
        if self.session is not None:
            self.session.add_peers(added)
        try:
            await self.store.persist()
        except (OSError, ConfigError) as e:
            raise DiscoveryIOError(f"Cannot save discovered peers: {e}") from e
        return added

    async def add_peer(self, address: str, source: str = "manual") -> bool:
        """Add one address. Returns False if it was already known."""
        return bool(await self.merge([address], source))

    def _report_peer(self, address: str) -> None:
        task = asyncio.get_running_loop().create_task(self.add_peer(address, "multicast"))
        self._pending.add(task)
        task.add_done_callback(self._report_done)

    def _report_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Could not add multicast peer: %s", exc)

    # --- Strategies ---

    def _read_manual(self) -> list[str]:
        path = self.manual_path
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            raise DiscoveryIOError(f"Cannot read manual peers from {path}: {e}") from e
        if not isinstance(data, list):
            raise DiscoveryIOError(f"Manual peers file must hold a JSON array: {path}")
        return [item for item in data if isinstance(item, str)]

    async def load_manual(self) -> list[str]:
        addresses = await asyncio.to_thread(self._read_manual)
        return await self.merge(addresses, "manual")

    async def seed_dht(self) -> list[str]:
        return await self.merge(self.discovery.dht.bootstrap, "dht")

    def dns_names(self) -> list[str]:
        settings = self.discovery.dns
        domain = (settings.domain or "").strip().strip(".")
        if not domain:
            return []
        names = [f"{settings.prefix}.{domain}"]
        names += [
            f"{settings.prefix}-{i}.{domain}"
            for i in range(1, self.discovery.limits.max_peers + 1)
        ]
        return names

    async def dns_scan(self) -> list[str]:
        """Resolve the prefixed names under the configured domain."""
        names = self.dns_names()
        if not names:
            return []
        port = self.store.config.active.port
        found: list[str] = []
        misses = 0
        for index, host in enumerate(names):
            ips = await self.resolver(host)
            if not ips:
                if index > 0:
                    misses += 1
                    if misses >= DNS_MAX_MISSES:
                        break
                continue
            misses = 0
            found.extend(f"{ip}:{port}" for ip in ips)
        return await self.merge(found, "dns")

    def beacon(self) -> bytes:
        config = self.store.config
        return json.dumps({
            "service": APP_NAME,
            "id": self.node_id,
            "name": config.node_name,
            "port": config.active.port,
        }).encode("utf-8")

    async def run_multicast(self) -> None:
        """Announce and listen on the LAN group until cancelled."""
        settings = self.discovery.multicast
        loop = asyncio.get_running_loop()
        try:
            sock = _multicast_socket(settings.address, settings.port)
            transport, _ = await loop.create_datagram_endpoint(
                lambda: BeaconProtocol(self.node_id, self._report_peer), sock=sock,
            )
        except OSError as e:
            raise DiscoveryIOError(
                f"Cannot join multicast group {settings.address}:{settings.port}: {e}"
            ) from e

        self._transport = transport
        log.info("Multicast discovery on %s:%d", settings.address, settings.port)
        try:
            while True:
                transport.sendto(self.beacon(), (settings.address, settings.port))
                await asyncio.sleep(MULTICAST_INTERVAL_SECS)
        finally:
            transport.close()
            self._transport = None

    # --- Lifecycle ---

    async def start(self) -> list[str]:
        """Run one-shot strategies and launch continuous ones.

        Returns the names of the strategies that ran or were launched.
        """
        settings = self.discovery
        if not settings.enabled:
            log.info("Peer discovery disabled")
            return []

        started: list[str] = []
        if settings.manual_enabled:
            try:
                await self.load_manual()
                started.append("manual")
            except DiscoveryIOError as e:
                log.warning("%s", e)
        if settings.dht_enabled:
            try:
                await self.seed_dht()
                started.append("dht")
            except DiscoveryIOError as e:
                log.warning("%s", e)
        if settings.multicast_enabled:
            if MULTICAST_TASK not in self.scheduler:
                self.scheduler.spawn(MULTICAST_TASK, self.run_multicast())
            started.append("multicast")
        if settings.dns_enabled:
            if not self.dns_names():
                log.info("DNS discovery enabled but no domain configured, skipping")
            else:
                if DNS_TASK not in self.scheduler:
                    self.scheduler.every(DNS_TASK, DNS_INTERVAL_SECS, self.dns_scan)
                started.append("dns")

        self.started = started
        log.info("Peer discovery started: %s", ", ".join(started) or "none")
        return started

    async def listen(self, seconds: float) -> list[str]:
        """Run multicast discovery for ``seconds``. Returns the peers it added."""
        before = set(self.peers)
        task = asyncio.get_running_loop().create_task(self.run_multicast())
        done, _ = await asyncio.wait({task}, timeout=seconds)
        if task in done:
            task.result()  # run_multicast only returns by raising
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        return [peer for peer in self.peers if peer not in before]

    async def scan_once(self) -> list[str]:
        """Run manual, DHT and DNS once without starting background work."""
        settings = self.discovery
        added: list[str] = []
        if settings.manual_enabled:
            added += await self.load_manual()
        if settings.dht_enabled:
            added += await self.seed_dht()
        if settings.dns_enabled:
            added += await self.dns_scan()
        return added

    async def stop(self) -> None:
        for name in (MULTICAST_TASK, DNS_TASK):
            self.scheduler.cancel(name)
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def status(self) -> dict[str, Any]:
        settings = self.discovery
        return {
            "enabled": settings.enabled,
            "methods": {
                "manual": settings.manual_enabled,
                "dht": settings.dht_enabled,
                "multicast": settings.multicast_enabled,
                "dns": settings.dns_enabled and bool(self.dns_names()),
            },
            "running": list(self.started),
            "found": dict(self.found),
            "manual_path": str(self.manual_path),
            "bootstrap": list(settings.dht.bootstrap),
            "dns_domain": settings.dns.domain or None,
            "peers": list(self.peers),
        }
