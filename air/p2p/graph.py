"""
Replicated graph store — the shared store nodes publish into.

A graph is a flat map of paths ("air/nodes/alpha") to records (JSON
objects). Every field carries a state stamp (ms since epoch); merges keep
the field with the higher stamp, ties broken by comparing the JSON
encoding so every replica converges on the same value.

Pieces:
    Graph          — in-memory records + field states, JSON file persistence
    GraphListener  — websocket handler for inbound peers + plain HTTP docroot
    GraphSession   — outbound peer links, put/get, relay between links/clients

Usage:
    listener = serve_listener(doc_root="www")
    session = await open_session(listener, ["10.0.0.2:8765"], storage_path)
    await session.put("air/nodes/alpha", {"alive": 1718000000000})
"""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import mimetypes
import os
import tempfile
import time
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.datastructures import Headers
from websockets.http11 import Response

from air import GRAPH_MAX_MESSAGE, GRAPH_PATH, PEER_TIMEOUT_SECS, __version__
from air.p2p.protocol import (
    ACK, DATA, GET, NOT_FOUND, PUT,
    ProtocolError, decode, encode, make_message,
)

log = logging.getLogger(__name__)

NONCE_WINDOW_SECONDS = 600
NONCE_MAX_SIZE = 10_000
RECONNECT_DELAY_SECS = 5.0

_GRAPH_FILE = "graph.json"


class GraphError(Exception):
    """Graph store read/write failure."""


def peer_url(address: str) -> str:
    """Turn a peer address into a websocket URL.

    "10.0.0.2:8765" -> "ws://10.0.0.2:8765/gun"
    "https://relay.example.com" -> "wss://relay.example.com/gun"
    """
    address = address.strip()
    if "://" not in address:
        address = "ws://" + address
    parts = urlsplit(address)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if scheme not in ("ws", "wss"):
        raise GraphError(f"Unsupported peer scheme: {parts.scheme!r}")
    if not parts.netloc:
        raise GraphError(f"Peer address has no host: {address!r}")
    path = parts.path if parts.path not in ("", "/") else GRAPH_PATH
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


def _now_ms() -> float:
    return time.time() * 1000


def _wins(new_value: Any, new_state: float, old_value: Any, old_state: float) -> bool:
    if new_state != old_state:
        return new_state > old_state
    return json.dumps(new_value, sort_keys=True) > json.dumps(old_value, sort_keys=True)


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class Graph:
    """Records keyed by path, with per-field state stamps."""

    def __init__(self, storage_path: Path | None = None) -> None:
        self.storage_path = Path(storage_path) if storage_path else None
        self._records: dict[str, dict[str, Any]] = {}
        self._states: dict[str, dict[str, float]] = {}

    @property
    def file(self) -> Path | None:
        return self.storage_path / _GRAPH_FILE if self.storage_path else None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: str) -> bool:
        return path in self._records

    def paths(self) -> list[str]:
        return sorted(self._records)

    def get(self, path: str) -> dict[str, Any] | None:
        record = self._records.get(path)
        return dict(record) if record is not None else None

    def states(self, path: str) -> dict[str, float]:
        return dict(self._states.get(path, {}))

    def stamp(self, record: dict[str, Any]) -> dict[str, float]:
        """State stamps for a locally written record."""
        now = _now_ms()
        return {key: now for key in record}

    def merge(
        self,
        path: str,
        record: dict[str, Any],
        states: dict[str, float] | None = None,
    ) -> dict[str, Any]:
        """Merge fields into ``path``. Returns the fields that changed."""
        states = states or self.stamp(record)
        current = self._records.setdefault(path, {})
        current_states = self._states.setdefault(path, {})
        changed: dict[str, Any] = {}
        for key, value in record.items():
            try:
                state = float(states.get(key, 0))
            except (TypeError, ValueError):
                state = 0.0
            if key in current and not _wins(value, state, current[key], current_states.get(key, 0.0)):
                continue
            current[key] = value
            current_states[key] = state
            changed[key] = value
        return changed

    # --- Persistence ---

    def load(self) -> None:
        """Load the graph file. A missing or corrupt file leaves it empty."""
        path = self.file
        if path is None or not path.is_file():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            records = data["records"]
            states = data["states"]
            if not isinstance(records, dict) or not isinstance(states, dict):
                raise ValueError("records and states must be objects")
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("Ignoring unreadable graph file %s: %s", path, e)
            return
        self._records = {k: v for k, v in records.items() if isinstance(v, dict)}
        self._states = {k: v for k, v in states.items() if isinstance(v, dict)}
        log.info("Loaded %d graph records from %s", len(self._records), path)

    def save(self) -> None:
        """Atomically write the graph file (temp + rename)."""
        path = self.file
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps({"records": self._records, "states": self._states})
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=".graph_")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp_path, str(path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ---------------------------------------------------------------------------
# Listener (inbound)
# ---------------------------------------------------------------------------

def _http_response(status: HTTPStatus, body: bytes, content_type: str) -> Response:
    headers = Headers([
        ("Content-Type", content_type),
        ("Content-Length", str(len(body))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, body)


class GraphListener:
    """Serves inbound websocket peers on ``/gun`` and static files elsewhere.

    Plain HTTP GET on ``/`` or ``/health`` answers a JSON health document
    unless an ``index.html`` exists in the docroot.
    """

    def __init__(self, doc_root: Path | str | None = None) -> None:
        self.doc_root = Path(doc_root) if doc_root else None
        self.session: GraphSession | None = None
        self._clients: set[Any] = set()
        self.started_at = time.time()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def attach(self, session: "GraphSession") -> None:
        self.session = session

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "uptime": int(time.time() - self.started_at),
            "clients": self.client_count,
            "peers": len(self.session.connected) if self.session else 0,
            "records": len(self.session.graph) if self.session else 0,
        }

    def _static_file(self, request_path: str) -> Path | None:
        if self.doc_root is None:
            return None
        relative = request_path.split("?", 1)[0].lstrip("/") or "index.html"
        root = self.doc_root.resolve()
        candidate = (root / relative).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            return None
        return candidate

    def process_request(self, connection: Any, request: Any) -> Response | None:
        """Answer plain HTTP requests; let websocket upgrades through."""
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        path = request.path.split("?", 1)[0]
        if path == "/health":
            body = json.dumps(self.health()).encode("utf-8")
            return _http_response(HTTPStatus.OK, body, "application/json")
        static = self._static_file(path)
        if static is not None:
            content_type = mimetypes.guess_type(static.name)[0] or "application/octet-stream"
            return _http_response(HTTPStatus.OK, static.read_bytes(), content_type)
        if path == "/":
            body = json.dumps(self.health()).encode("utf-8")
            return _http_response(HTTPStatus.OK, body, "application/json")
        return _http_response(HTTPStatus.NOT_FOUND, b"Not Found\n", "text/plain")

    async def handler(self, websocket: Any) -> None:
        """Per-connection loop for an inbound peer."""
        self._clients.add(websocket)
        log.debug("Inbound peer connected: %s", websocket.remote_address)
        try:
            async for frame in websocket:
                if self.session is None:
                    log.debug("Dropping frame, no graph session attached yet")
                    continue
                await self.session.receive(frame, websocket)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._clients.discard(websocket)
            log.debug("Inbound peer disconnected: %s", websocket.remote_address)

    async def broadcast(self, text: str, exclude: Any = None) -> None:
        for client in list(self._clients):
            if client is exclude:
                continue
            try:
                await client.send(text)
            except websockets.ConnectionClosed:
                self._clients.discard(client)


def serve_listener(doc_root: Path | str | None = None) -> GraphListener:
    """Create the inbound side of the graph store."""
    return GraphListener(doc_root)


# ---------------------------------------------------------------------------
# Session (outbound)
# ---------------------------------------------------------------------------

class GraphSession:
    """Outbound links to peers plus the local graph replica."""

    def __init__(
        self,
        graph: Graph,
        listener: GraphListener | None = None,
        connect: Callable[..., Any] = websockets.connect,
        reconnect_delay: float = RECONNECT_DELAY_SECS,
        timeout: float = PEER_TIMEOUT_SECS,
    ) -> None:
        self.graph = graph
        self.listener = listener
        self._connect = connect
        self.reconnect_delay = reconnect_delay
        self.timeout = timeout
        self._addresses: list[str] = []
        self._links: dict[str, Any] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._pending: dict[str, list[asyncio.Future]] = {}
        self._seen_nonces: collections.OrderedDict[str, float] = collections.OrderedDict()
        self._save_lock = asyncio.Lock()
        self._closed = False
        if listener is not None:
            listener.attach(self)

    @property
    def peers(self) -> list[str]:
        return list(self._addresses)

    @property
    def connected(self) -> list[str]:
        return list(self._links)

    # --- Peer links ---

    def add_peers(self, addresses: Iterable[str]) -> list[str]:
        """Start links to addresses not seen before. Returns the new ones."""
        added = []
        for address in addresses:
            if not address or address in self._addresses:
                continue
            try:
                peer_url(address)
            except GraphError as e:
                log.warning("Skipping peer %s: %s", address, e)
                continue
            self._addresses.append(address)
            added.append(address)
            if not self._closed:
                self._tasks[address] = asyncio.get_running_loop().create_task(
                    self._link_loop(address), name=f"graph-peer:{address}"
                )
        return added

    async def _link_loop(self, address: str) -> None:
        url = peer_url(address)
        while not self._closed:
            try:
                async with self._connect(
                    url, max_size=GRAPH_MAX_MESSAGE, open_timeout=self.timeout
                ) as ws:
                    self._links[address] = ws
                    log.info("Connected to peer %s", url)
                    async for frame in ws:
                        await self.receive(frame, ws)
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                log.debug("Peer %s unavailable: %s", url, e)
            finally:
                self._links.pop(address, None)
            if self._closed:
                break
            await asyncio.sleep(self.reconnect_delay)

    async def _send_links(self, text: str, exclude: Any = None) -> None:
        for address, ws in list(self._links.items()):
            if ws is exclude:
                continue
            try:
                await ws.send(text)
            except websockets.ConnectionClosed:
                self._links.pop(address, None)

    async def _relay(self, text: str, origin: Any = None) -> None:
        await self._send_links(text, exclude=origin)
        if self.listener is not None:
            await self.listener.broadcast(text, exclude=origin)

    def _is_duplicate_nonce(self, nonce: str) -> bool:
        now = time.monotonic()
        while self._seen_nonces:
            oldest_key, oldest_time = next(iter(self._seen_nonces.items()))
            if now - oldest_time > NONCE_WINDOW_SECONDS:
                del self._seen_nonces[oldest_key]
            else:
                break
        if nonce in self._seen_nonces:
            return True
        self._seen_nonces[nonce] = now
        while len(self._seen_nonces) > NONCE_MAX_SIZE:
            self._seen_nonces.popitem(last=False)
        return False

    async def _commit(self) -> None:
        async with self._save_lock:
            try:
                await asyncio.to_thread(self.graph.save)
            except OSError as e:
                raise GraphError(f"Failed to persist graph: {e}") from e

    # --- Inbound messages ---

    async def receive(self, frame: str | bytes, origin: Any) -> None:
        """Handle one frame from an inbound client or outbound link."""
        try:
            msg = decode(frame)
        except ProtocolError as e:
            log.debug("Dropping invalid frame: %s", e)
            return
        if self._is_duplicate_nonce(msg["nonce"]):
            return

        msg_type = msg["type"]
        payload = msg["payload"]

        if msg_type in (PUT, DATA):
            path = payload["path"]
            states = payload.get("states")
            if not isinstance(states, dict):
                states = None
            changed = self.graph.merge(path, payload["record"], states)
            for future in self._pending.pop(path, []):
                if not future.done():
                    future.set_result(self.graph.get(path))
            if changed:
                try:
                    await self._commit()
                except GraphError as e:
                    log.error("%s", e)
                await self._relay(encode(msg), origin)
            if msg_type == PUT:
                await self._reply(origin, make_message(ACK, {"ref": msg["nonce"], "ok": True}))

        elif msg_type == GET:
            path = payload["path"]
            record = self.graph.get(path)
            if record is None:
                reply = make_message(NOT_FOUND, {"path": path})
            else:
                reply = make_message(DATA, {
                    "path": path, "record": record, "states": self.graph.states(path),
                })
            await self._reply(origin, reply)

        # ACK and NOT_FOUND need no action

    async def _reply(self, origin: Any, msg: dict) -> None:
        try:
            await origin.send(encode(msg))
        except websockets.ConnectionClosed:
            pass

    # --- Public API ---

    async def put(self, path: str, record: dict[str, Any]) -> None:
        """Write fields locally, persist, and send them to every peer.

        Raises GraphError if the local write cannot be persisted.
        """
        if not isinstance(record, dict):
            raise GraphError("record must be a dict")
        states = self.graph.stamp(record)
        self.graph.merge(path, record, states)
        await self._commit()
        msg = make_message(PUT, {"path": path, "record": record, "states": states})
        self._is_duplicate_nonce(msg["nonce"])
        try:
            text = encode(msg)
        except ProtocolError as e:
            raise GraphError(str(e)) from e
        await self._relay(text)

    async def get(self, path: str, timeout: float | None = None) -> dict[str, Any] | None:
        """Read a record, asking connected peers when it is not held locally."""
        record = self.graph.get(path)
        if record is not None or not self._links:
            return record
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(path, []).append(future)
        await self._send_links(encode(make_message(GET, {"path": path})))
        try:
            return await asyncio.wait_for(future, timeout or self.timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._pending.get(path, [])
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._pending.pop(path, None)

    async def close(self) -> None:
        """Cancel peer links and flush the graph to disk."""
        self._closed = True
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._links.clear()
        try:
            await self._commit()
        except GraphError as e:
            log.error("%s", e)


async def open_session(
    listener: GraphListener | None,
    peer_addresses: Iterable[str],
    storage_path: Path | None,
    **kwargs: Any,
) -> GraphSession:
    """Load the local replica and start links to ``peer_addresses``."""
    graph = Graph(storage_path)
    await asyncio.to_thread(graph.load)
    session = GraphSession(graph, listener, **kwargs)
    session.add_peers(peer_addresses)
    return session
