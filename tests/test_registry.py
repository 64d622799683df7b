"""
Tests for the peer registry — identity record, heartbeat, DDNS and IP refresh.

The graph session is an AsyncMock; nothing leaves the process.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from air.config import ConfigStore
from air.p2p.graph import GraphError
from air.p2p.registry import (
    DDNS_PATH,
    NodeIdentity,
    PeerRegistry,
    PublishError,
    fetch_public_ip,
    node_path,
)
from air.p2p.scheduler import Scheduler


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    store = ConfigStore(environ={
        "AIR_ROOT": str(tmp_path / "root"),
        "AIR_CONFIG_DIR": str(tmp_path / "config"),
        "AIR_STATE_DIR": str(tmp_path / "state"),
        "AIR_DATA_DIR": str(tmp_path / "data"),
        "NAME": "alpha",
    })
    store.load()
    store.config.active.peers.extend(["a:1", "b:2"])
    return store


@pytest.fixture
def session():
    session = MagicMock()
    session.put = AsyncMock()
    return session


@pytest.fixture
def scheduler():
    scheduler = MagicMock(spec=Scheduler)
    return scheduler


def _registry(session, store, scheduler, **kwargs) -> PeerRegistry:
    kwargs.setdefault("ip_resolver", AsyncMock(return_value="203.0.113.7"))
    return PeerRegistry(session, store, scheduler, **kwargs)


# ---------------------------------------------------------------------------
# TestNodeIdentity
# ---------------------------------------------------------------------------

class TestNodeIdentity:

    def test_record_keys(self):
        identity = NodeIdentity(
            name="alpha", domain="air.example", https=True, http=False,
            port=8765, peers=["a:1"], since=1, alive=2, new_ip=None,
        )
        record = identity.to_record()
        assert set(record) == {
            "name", "domain", "https", "http", "port", "peers", "since", "alive", "newIP",
        }
        assert json.loads(record["peers"]) == ["a:1"]

    def test_node_path(self):
        assert node_path("alpha") == "air/nodes/alpha"


# ---------------------------------------------------------------------------
# TestPeerRegistry
# ---------------------------------------------------------------------------

class TestPeerRegistry:

    @pytest.mark.asyncio
    async def test_register_publishes_and_schedules(self, session, store, scheduler):
        registry = _registry(session, store, scheduler, tls=True)
        identity = await registry.register()

        path, record = session.put.await_args.args
        assert path == "air/nodes/alpha"
        assert record["name"] == "alpha"
        assert record["https"] is True and record["http"] is False
        assert json.loads(record["peers"]) == ["a:1", "b:2"]
        assert record["since"] == identity.since > 0

        names = [c.args[0] for c in scheduler.every.call_args_list]
        intervals = {c.args[0]: c.args[1] for c in scheduler.every.call_args_list}
        assert names == ["heartbeat", "ddns-refresh", "ip-refresh"]
        assert intervals == {"heartbeat": 60, "ddns-refresh": 300, "ip-refresh": 300}

    @pytest.mark.asyncio
    async def test_register_schedules_config_sync_with_url(self, session, store, scheduler):
        store.config.sync = "https://cfg.example/air.json"
        await _registry(session, store, scheduler).register()
        names = [c.args[0] for c in scheduler.every.call_args_list]
        assert "config-sync" in names

    @pytest.mark.asyncio
    async def test_register_failure_propagates(self, session, store, scheduler):
        session.put.side_effect = GraphError("disk full")
        registry = _registry(session, store, scheduler)
        with pytest.raises(PublishError):
            await registry.register()
        scheduler.every.assert_not_called()
        assert registry.registered is False

    @pytest.mark.asyncio
    async def test_heartbeat(self, session, store, scheduler):
        registry = _registry(session, store, scheduler)
        await registry.heartbeat()
        path, record = session.put.await_args.args
        assert path == "air/nodes/alpha"
        assert set(record) == {"alive"}
        assert registry.last_alive == record["alive"]

    @pytest.mark.asyncio
    async def test_heartbeat_failure_raises_publish_error(self, session, store, scheduler):
        session.put.side_effect = OSError("gone")
        with pytest.raises(PublishError):
            await _registry(session, store, scheduler).heartbeat()

    @pytest.mark.asyncio
    async def test_ddns_missing_file(self, session, store, scheduler):
        assert await _registry(session, store, scheduler).ddns_refresh() is False
        session.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ddns_empty_or_corrupt(self, session, store, scheduler, tmp_path):
        ddns = tmp_path / "ddns.json"
        registry = _registry(session, store, scheduler, ddns_path=ddns)
        ddns.write_text("{}")
        assert await registry.ddns_refresh() is False
        ddns.write_text("{broken")
        assert await registry.ddns_refresh() is False
        session.put.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ddns_published(self, session, store, scheduler):
        store.paths.root.mkdir(parents=True)
        store.paths.ddns_file.write_text(json.dumps({"alpha.example": "203.0.113.7"}))
        assert await _registry(session, store, scheduler).ddns_refresh() is True
        session.put.assert_awaited_once_with(DDNS_PATH, {"alpha.example": "203.0.113.7"})

    @pytest.mark.asyncio
    async def test_ip_published_only_on_change(self, session, store, scheduler):
        resolver = AsyncMock(side_effect=["203.0.113.7", "203.0.113.7", "203.0.113.9"])
        registry = _registry(session, store, scheduler, ip_resolver=resolver)

        assert await registry.ip_refresh() is True
        assert await registry.ip_refresh() is False
        assert await registry.ip_refresh() is True

        assert session.put.await_count == 2
        path, record = session.put.await_args.args
        assert path == "air/nodes/alpha"
        assert record["newIP"] == "203.0.113.9"
        assert "timestamp" in record
        assert registry.last_ip == "203.0.113.9"

    @pytest.mark.asyncio
    async def test_ip_lookup_failure_propagates(self, session, store, scheduler):
        resolver = AsyncMock(side_effect=PublishError("IP lookup failed"))
        registry = _registry(session, store, scheduler, ip_resolver=resolver)
        with pytest.raises(PublishError):
            await registry.ip_refresh()
        assert registry.last_ip is None

    @pytest.mark.asyncio
    async def test_failures_contained_by_scheduler(self, session, store):
        """A failing heartbeat is logged and the loop keeps its schedule."""
        import asyncio

        session.put.side_effect = GraphError("offline")
        scheduler = Scheduler()
        registry = _registry(session, store, scheduler)
        scheduler.every("heartbeat", 0, registry.heartbeat)
        for _ in range(10):
            await asyncio.sleep(0)
        assert scheduler.failures["heartbeat"] >= 2
        assert "heartbeat" in scheduler
        await scheduler.cancel_all()


# ---------------------------------------------------------------------------
# TestFetchPublicIp
# ---------------------------------------------------------------------------

def _fake_http(status: int, payload) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)
    http = MagicMock()
    http.get = MagicMock(return_value=response)
    http.__aenter__ = AsyncMock(return_value=http)
    http.__aexit__ = AsyncMock(return_value=False)
    return http


class TestFetchPublicIp:

    @pytest.mark.asyncio
    async def test_returns_ip(self):
        with patch("air.p2p.registry.aiohttp.ClientSession", return_value=_fake_http(200, {"ip": "198.51.100.4"})):
            assert await fetch_public_ip("https://ip.example") == "198.51.100.4"

    @pytest.mark.asyncio
    async def test_http_error(self):
        with patch("air.p2p.registry.aiohttp.ClientSession", return_value=_fake_http(500, {})):
            with pytest.raises(PublishError, match="HTTP 500"):
                await fetch_public_ip("https://ip.example")

    @pytest.mark.asyncio
    async def test_missing_ip(self):
        with patch("air.p2p.registry.aiohttp.ClientSession", return_value=_fake_http(200, {"addr": "x"})):
            with pytest.raises(PublishError, match="no address"):
                await fetch_public_ip("https://ip.example")
