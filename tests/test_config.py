"""
Tests for Air configuration — paths, deep merge, load/save, env overrides.

All file I/O happens under tmp_path; no test reads the real home directory.
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from air import DEFAULT_PORT, MULTICAST_ADDR
from air.config import (
    Config,
    ConfigError,
    ConfigParseError,
    ConfigStore,
    EnvConfig,
    TLSMaterial,
    deep_merge,
    env_overrides,
    validate,
)
from air.paths import resolve_paths


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def environ(tmp_path):
    """Environment that keeps every Air directory under tmp_path."""
    return {
        "AIR_ROOT": str(tmp_path / "root"),
        "AIR_CONFIG_DIR": str(tmp_path / "config"),
        "AIR_STATE_DIR": str(tmp_path / "state"),
        "AIR_DATA_DIR": str(tmp_path / "data"),
    }


@pytest.fixture
def store(environ):
    return ConfigStore(environ=environ)


def _write_config(store: ConfigStore, doc: dict) -> None:
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps(doc))


# ---------------------------------------------------------------------------
# TestPaths
# ---------------------------------------------------------------------------

class TestPaths:

    def test_air_overrides_win(self, environ, tmp_path):
        paths = resolve_paths(environ)
        assert paths.config_file == tmp_path / "config" / "config.json"
        assert paths.lock_file == tmp_path / "state" / "air.lock"
        assert paths.pid_file == tmp_path / "state" / "air.pid"
        assert paths.shared_data_dir == tmp_path / "data" / "shared"
        assert paths.ddns_file == tmp_path / "root" / "ddns.json"

    def test_xdg_fallback(self, tmp_path):
        paths = resolve_paths({
            "XDG_CONFIG_HOME": str(tmp_path / "xc"),
            "XDG_STATE_HOME": str(tmp_path / "xs"),
            "XDG_DATA_HOME": str(tmp_path / "xd"),
        })
        assert paths.config_dir == tmp_path / "xc" / "air"
        assert paths.state_dir == tmp_path / "xs" / "air"
        assert paths.data_dir == tmp_path / "xd" / "air"

    def test_migrate_legacy_copies_once(self, environ):
        paths = resolve_paths(environ)
        paths.root.mkdir(parents=True)
        paths.legacy_config_file.write_text('{"name": "legacy"}')

        assert paths.migrate_legacy() is True
        assert json.loads(paths.config_file.read_text())["name"] == "legacy"
        assert paths.migrate_legacy() is False


# ---------------------------------------------------------------------------
# TestDeepMerge
# ---------------------------------------------------------------------------

class TestDeepMerge:

    def test_disjoint_keys_commute(self):
        a = {"x": 1, "nested": {"p": 1}}
        b = {"y": 2, "other": {"q": 2}}
        assert deep_merge(a, b) == deep_merge(b, a)

    def test_left_scalar_wins(self):
        assert deep_merge({"port": 9000}, {"port": 8765}) == {"port": 9000}

    def test_empty_left_takes_right(self):
        assert deep_merge({"domain": ""}, {"domain": "air.example"}) == {"domain": "air.example"}
        assert deep_merge({"domain": None}, {"domain": "air.example"}) == {"domain": "air.example"}

    def test_false_and_zero_are_values(self):
        result = deep_merge({"enabled": False, "count": 0}, {"enabled": True, "count": 5})
        assert result == {"enabled": False, "count": 0}

    def test_array_union_preserves_order(self):
        result = deep_merge({"peers": ["a:1", "b:2"]}, {"peers": ["b:2", "c:3", "a:1"]})
        assert result["peers"] == ["a:1", "b:2", "c:3"]

    def test_nested_objects_recurse(self):
        left = {"production": {"port": 9000}}
        right = {"production": {"port": 8765, "domain": "air.example"}}
        assert deep_merge(left, right) == {
            "production": {"port": 9000, "domain": "air.example"},
        }

    def test_inputs_not_mutated(self):
        left = {"peers": ["a:1"], "sub": {"k": 1}}
        right = {"peers": ["b:2"], "sub": {"j": 2}}
        deep_merge(left, right)
        assert left == {"peers": ["a:1"], "sub": {"k": 1}}
        assert right == {"peers": ["b:2"], "sub": {"j": 2}}

    def test_rejects_non_mappings(self):
        with pytest.raises(TypeError):
            deep_merge({"a": 1}, ["b"])


# ---------------------------------------------------------------------------
# TestTypedConfig
# ---------------------------------------------------------------------------

class TestTypedConfig:

    def test_active_environment_always_present(self):
        config = Config(environment="staging")
        assert "staging" in config.environments
        assert config.active.port == DEFAULT_PORT

    def test_round_trip_keeps_unknown_keys(self):
        doc = {
            "name": "alpha",
            "environment": "production",
            "custom": {"keep": True},
            "production": {"port": 9000, "peers": ["a:1"], "extra_field": 7},
        }
        config = Config.from_dict(doc)
        out = config.to_dict()
        assert out["custom"] == {"keep": True}
        assert out["production"]["extra_field"] == 7
        assert out["production"]["peers"] == ["a:1"]

    def test_legacy_env_key(self):
        config = Config.from_dict({"env": "production", "production": {"port": 1234}})
        assert config.environment == "production"
        assert config.active.port == 1234

    def test_ssl_section_maps_to_tls(self):
        env = EnvConfig.from_dict({"ssl": {"key": "/k.pem", "cert": "/c.pem"}})
        assert env.tls == TLSMaterial(key="/k.pem", cert="/c.pem")
        assert env.to_dict()["ssl"] == {"key": "/k.pem", "cert": "/c.pem"}

    def test_node_name_defaults_to_localhost(self):
        assert Config().node_name == "localhost"
        assert Config(name="alpha").node_name == "alpha"

    def test_resolve_tls_requires_files(self, tmp_path):
        key = tmp_path / "key.pem"
        cert = tmp_path / "cert.pem"
        config = Config.from_dict({
            "environment": "production",
            "production": {"ssl": {"key": str(key), "cert": str(cert)}},
        })
        assert config.resolve_tls() is None
        key.write_text("k")
        cert.write_text("c")
        assert config.resolve_tls() == TLSMaterial(key=str(key), cert=str(cert))


# ---------------------------------------------------------------------------
# TestValidate
# ---------------------------------------------------------------------------

class TestValidate:

    def test_defaults_are_valid(self):
        assert validate(Config()) == []

    def test_bad_port(self):
        config = Config()
        config.active.port = 70000
        assert any("port" in e for e in validate(config))

    def test_unknown_environment(self):
        assert any("Environment" in e for e in validate(Config(environment="qa")))

    def test_missing_tls_files(self, tmp_path):
        config = Config()
        config.active.tls = TLSMaterial(key=str(tmp_path / "k"), cert=str(tmp_path / "c"))
        assert any("SSL" in e for e in validate(config))


# ---------------------------------------------------------------------------
# TestEnvOverrides
# ---------------------------------------------------------------------------

class TestEnvOverrides:

    def test_scalar_overrides(self):
        doc = env_overrides({"NAME": "alpha", "PORT": "9100", "DOMAIN": "air.example"}, "production")
        assert doc["name"] == "alpha"
        assert doc["production"] == {"port": 9100, "domain": "air.example"}

    def test_bad_port_ignored(self):
        assert env_overrides({"PORT": "not-a-port"}, "development") == {}

    def test_ssl_needs_both(self):
        assert env_overrides({"SSL_KEY": "/k"}, "production") == {}
        doc = env_overrides({"SSL_KEY": "/k", "SSL_CERT": "/c"}, "production")
        assert doc["production"]["ssl"] == {"key": "/k", "cert": "/c"}

    def test_discovery_flags(self):
        doc = env_overrides({
            "AIR_DNS_ENABLED": "true",
            "AIR_MULTICAST_ENABLED": "0",
            "AIR_DNS_DOMAIN": "nodes.example",
            "AIR_DHT_BOOTSTRAP": "a:1, b:2,,",
        }, "development")
        discovery = doc["development"]["discovery"]
        assert discovery["methods"] == {"dns": True, "multicast": False}
        assert discovery["dns"] == {"domain": "nodes.example"}
        assert discovery["dht"] == {"bootstrap": ["a:1", "b:2"]}

    def test_unrecognized_flag_ignored(self):
        assert env_overrides({"AIR_DHT_ENABLED": "maybe"}, "development") == {}


# ---------------------------------------------------------------------------
# TestConfigStore
# ---------------------------------------------------------------------------

class TestConfigStore:

    def test_load_defaults_when_missing(self, store, environ):
        config = store.load()
        assert config.environment == "development"
        assert config.active.port == DEFAULT_PORT
        assert config.active.domain == "localhost"
        assert config.active.www == str(Path(environ["AIR_ROOT"]) / "www")
        assert config.active.discovery.multicast.address == MULTICAST_ADDR

    def test_priority_env_over_file_over_defaults(self, environ):
        store = ConfigStore(environ={**environ, "PORT": "9300"})
        _write_config(store, {
            "name": "from-file",
            "environment": "development",
            "development": {"port": 9200, "domain": "file.example", "peers": ["a:1"]},
        })
        config = store.load()
        assert config.active.port == 9300
        assert config.active.domain == "file.example"
        assert config.name == "from-file"
        assert config.active.peers == ["a:1"]

    def test_environment_selector(self, environ):
        store = ConfigStore(environ={**environ, "AIR_ENV": "production"})
        _write_config(store, {"environment": "development", "production": {"port": 9400}})
        config = store.load()
        assert config.environment == "production"
        assert config.active.port == 9400

    def test_corrupt_file_falls_back_to_defaults(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        config = store.load()
        assert config.active.port == DEFAULT_PORT

    def test_read_file_raises_parse_error(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("[1, 2]")
        with pytest.raises(ConfigParseError):
            store.read_file()

    def test_save_round_trips(self, store):
        config = store.load()
        config.active.peers.append("a:1")
        path = store.save()
        data = json.loads(path.read_text())
        assert data["development"]["peers"] == ["a:1"]
        assert store.version == 1
        assert not list(path.parent.glob(".config_*"))

    def test_update_and_reset(self, store):
        store.load()
        store.update({"name": "renamed", "development": {"port": 9500}})
        assert store.config.name == "renamed"
        assert store.config.active.port == 9500

        store.reset()
        data = json.loads(store.path.read_text())
        assert data["name"] is None
        assert data["development"]["port"] == DEFAULT_PORT

    def test_legacy_file_migrated_on_load(self, store):
        store.paths.root.mkdir(parents=True)
        store.paths.legacy_config_file.write_text(json.dumps({"name": "old-node"}))
        config = store.load()
        assert config.name == "old-node"
        assert store.path.is_file()

    @pytest.mark.asyncio
    async def test_persist_writes_latest_snapshot(self, store):
        store.load()
        store.config.active.peers.append("a:1")
        first = store.persist()
        store.config.active.peers.append("b:2")
        await first
        await store.persist()
        data = json.loads(store.path.read_text())
        assert data["development"]["peers"] == ["a:1", "b:2"]
        assert store.version == 2

    @pytest.mark.asyncio
    async def test_sync_remote_without_url(self, store):
        store.load()
        assert await store.sync_remote() is False

    @pytest.mark.asyncio
    async def test_sync_remote_merges_under_local(self, store):
        store.load()
        store.config.name = "local"

        response = MagicMock()
        response.status = 200
        response.json = AsyncMock(return_value={
            "name": "remote",
            "development": {"peers": ["r:1"]},
        })
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get = MagicMock(return_value=response)
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)

        with patch("air.config.aiohttp.ClientSession", return_value=session):
            assert await store.sync_remote("https://cfg.example/air.json") is True

        assert store.config.name == "local"
        assert store.config.active.peers == ["r:1"]
        assert json.loads(store.path.read_text())["development"]["peers"] == ["r:1"]

    @pytest.mark.asyncio
    async def test_sync_remote_http_error(self, store):
        store.load()
        response = MagicMock()
        response.status = 503
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get = MagicMock(return_value=response)
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)

        with patch("air.config.aiohttp.ClientSession", return_value=session):
            with pytest.raises(ConfigError, match="503"):
                await store.sync_remote("https://cfg.example/air.json")
