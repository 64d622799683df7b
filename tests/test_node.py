"""
Tests for the node lifecycle — startup order, exit codes, graceful stop.

The listener is a fake serve callable, multicast is switched off and the
public IP lookup is mocked, so no sockets are opened.
"""

from __future__ import annotations

import asyncio
import errno
import json
import os
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from air.config import ConfigStore
from air.lock import LockState
from air.p2p.node import LOCK_OWNER, AirNode, StartupError, describe_status
from air.p2p.supervisor import RestartLimitExceeded, SupervisorState


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeServer:
    def __init__(self) -> None:
        self._closed = asyncio.Event()

    def close(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()


class FakeServe:
    def __init__(self, always_fail: OSError | None = None) -> None:
        self.always_fail = always_fail
        self.calls: list[int] = []

    async def __call__(self, handler, host, port, **kwargs):
        self.calls.append(port)
        if self.always_fail is not None:
            raise self.always_fail
        return FakeServer()


real_sleep = asyncio.sleep


async def _started(node: AirNode, timeout: float = 5.0) -> None:
    """Wait until the startup sequence has reached discovery."""
    deadline = time.monotonic() + timeout
    while node.discovery is None:
        if time.monotonic() > deadline:
            raise AssertionError("node did not start")
        await real_sleep(0.01)
    # let start_discovery finish
    for _ in range(10):
        await real_sleep(0.01)


@pytest.fixture
def environ(tmp_path):
    return {
        "AIR_ROOT": str(tmp_path / "root"),
        "AIR_CONFIG_DIR": str(tmp_path / "config"),
        "AIR_STATE_DIR": str(tmp_path / "state"),
        "AIR_DATA_DIR": str(tmp_path / "data"),
        "AIR_MULTICAST_ENABLED": "false",
        "NAME": "alpha",
    }


@pytest.fixture(autouse=True)
def no_process_hooks():
    with patch("air.p2p.node.atexit"), \
            patch.object(AirNode, "_install_signal_handlers"):
        yield


def _node(environ, serve=None, **kwargs) -> AirNode:
    return AirNode(
        environ=environ,
        serve=serve or FakeServe(),
        ip_resolver=AsyncMock(return_value="203.0.113.7"),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# TestStartup
# ---------------------------------------------------------------------------

class TestStartup:

    @pytest.mark.asyncio
    async def test_phases_run_in_order(self, environ):
        node = _node(environ)
        calls: list[str] = []
        node.load_config = lambda: calls.append("load_config")
        node.acquire_lock = lambda: calls.append("acquire_lock")
        for phase in ("init_supervisor", "open_session", "register_identity", "start_discovery"):
            setattr(node, phase, AsyncMock(side_effect=lambda p=phase: calls.append(p)))

        await node.start()

        assert calls == [
            "load_config", "acquire_lock", "init_supervisor",
            "open_session", "register_identity", "start_discovery",
        ]

    @pytest.mark.asyncio
    async def test_full_start_and_stop(self, environ):
        node = _node(environ)
        await node.start()

        assert node.supervisor.state is SupervisorState.LISTENING
        assert node.lock.read().owner == LOCK_OWNER
        assert node.registry.registered is True
        assert "air/nodes/alpha" in node.session.graph
        assert {"heartbeat", "ddns-refresh", "ip-refresh"} <= set(node.scheduler.names)
        assert node.status()["name"] == "alpha"

        await node.stop()

        assert node.scheduler.names == []
        assert node.supervisor.state is SupervisorState.TERMINATED
        assert not node.lock.lock_path.exists()

    @pytest.mark.asyncio
    async def test_port_override(self, environ):
        serve = FakeServe()
        node = _node(environ, serve=serve, port=9100)
        await node.start()
        assert serve.calls == [9100]
        await node.stop()

    @pytest.mark.asyncio
    async def test_invalid_config(self, environ):
        node = _node(environ, port=70000)
        with pytest.raises(StartupError) as exc_info:
            node.load_config()
        assert exc_info.value.phase == "config"
        assert await _node(environ, port=70000).run() == 1

    @pytest.mark.asyncio
    async def test_unwritable_config_keeps_node_up(self, environ):
        environ["AIR_DHT_BOOTSTRAP"] = "a:1"
        node = _node(environ)
        node.store.path.mkdir(parents=True)  # os.replace onto a directory fails

        await node.start()

        assert node.supervisor.state is SupervisorState.LISTENING
        assert node.store.config.active.peers == ["a:1"]
        assert "dht" not in node.discovery.started
        assert "heartbeat" in node.scheduler.names

        await node.stop()
        assert node.scheduler.names == []
        assert not node.lock.lock_path.exists()


# ---------------------------------------------------------------------------
# TestExitCodes
# ---------------------------------------------------------------------------

class TestExitCodes:

    @pytest.mark.asyncio
    async def test_lock_conflict_exits_1(self, environ):
        store = ConfigStore(environ=environ)
        record = {
            "pid": os.getpid(),
            "startedAt": int(time.time() * 1000) - 1000,
            "port": 8765,
            "location": "/srv/air",
            "owner": "other",
        }
        store.paths.lock_file.parent.mkdir(parents=True, exist_ok=True)
        store.paths.lock_file.write_text(json.dumps(record))
        serve = FakeServe()

        assert await _node(environ, serve=serve).run() == 1

        assert serve.calls == []
        assert json.loads(store.paths.lock_file.read_text()) == record

    @pytest.mark.asyncio
    async def test_restart_limit_exits_1(self, environ):
        serve = FakeServe(always_fail=OSError(errno.EACCES, "denied"))
        node = _node(environ, serve=serve)
        with patch("air.p2p.supervisor.asyncio.sleep", new=AsyncMock()):
            assert await node.run() == 1
        assert len(serve.calls) == 6
        assert not node.lock.lock_path.exists()

    @pytest.mark.asyncio
    async def test_unexpected_phase_error_exits_1(self, environ):
        node = _node(environ)
        node.start_discovery = AsyncMock(side_effect=RuntimeError("boom"))

        assert await node.run() == 1

        assert node.scheduler.names == []
        assert node.supervisor.state is SupervisorState.TERMINATED
        assert not node.lock.lock_path.exists()

    @pytest.mark.asyncio
    async def test_unwritable_lock_dir_exits_1(self, environ, tmp_path):
        (tmp_path / "state").write_text("not a directory")
        node = _node(environ)
        node.load_config()

        with pytest.raises(StartupError) as exc_info:
            node.acquire_lock()
        assert exc_info.value.phase == "lock"

        serve = FakeServe()
        assert await _node(environ, serve=serve).run() == 1
        assert serve.calls == []

    @pytest.mark.asyncio
    async def test_fatal_stops_with_exit_1(self, environ):
        node = _node(environ)
        task = asyncio.create_task(node.run())
        await _started(node)

        node.fatal(RestartLimitExceeded("listener gone"))
        assert await asyncio.wait_for(task, 5) == 1
        assert node.scheduler.names == []

    @pytest.mark.asyncio
    async def test_signal_releases_lock_then_stops(self, environ):
        node = _node(environ)
        task = asyncio.create_task(node.run())
        await _started(node)

        node._signal_shutdown()
        assert not node.lock.lock_path.exists()
        assert await asyncio.wait_for(task, 5) == 0


# ---------------------------------------------------------------------------
# TestDescribeStatus
# ---------------------------------------------------------------------------

class TestDescribeStatus:

    def test_without_lock(self, environ):
        store = ConfigStore(environ=environ)
        store.load()
        info = describe_status(store, environ)
        assert info["lock"] == LockState.UNLOCKED.value
        assert info["pid"] is None
        assert info["name"] == "alpha"
        assert info["port"] == 8765
        assert info["paths"]["lock_file"] == str(store.paths.lock_file)

    def test_with_lock(self, environ):
        store = ConfigStore(environ=environ)
        store.load()
        node = AirNode(store=store, environ=environ, serve=MagicMock())
        node.acquire_lock()

        info = describe_status(store, environ)

        assert info["lock"] == LockState.LOCKED.value
        assert info["pid"] == os.getpid()
        assert info["owner"] == LOCK_OWNER
        node.lock.release(LOCK_OWNER)
