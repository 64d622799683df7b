"""
Config store — one JSON document partitioned by named environment.

Document shape:
    {
      "name": "node-1", "environment": "production", "host": "0.0.0.0",
      "production": {"port": 8765, "domain": "...", "peers": [...], "discovery": {...}},
      "development": {...}
    }

Load priority (highest first): process environment > config file > defaults.
Layers are combined with ``deep_merge`` where the earlier value wins and
arrays are unioned in insertion order.

Writes validate the serialized JSON by parsing it back, then replace the
file atomically (temp + os.replace). ``persist()`` is the single-writer
path used by concurrent tasks inside the event loop.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import aiohttp

from air import (
    DEFAULT_ENV, DEFAULT_HOST, DEFAULT_PORT, DHT_BOOTSTRAP, DNS_PREFIX,
    ENVIRONMENTS, MAX_PEERS, MULTICAST_ADDR, MULTICAST_PORT, PEER_TIMEOUT_SECS,
)
from air.paths import AirPaths, resolve_paths

log = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(Exception):
    """Error in configuration handling."""


class ConfigParseError(ConfigError):
    """Config document is not valid JSON or not a JSON object."""


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def deep_merge(left: Mapping[str, Any], right: Mapping[str, Any]) -> dict[str, Any]:
    """Merge two documents. Values already in ``left`` win.

    - keys unique to either side pass through
    - two lists become their de-duplicated union, left items first
    - two dicts are merged recursively
    - a colliding value keeps the left one unless it is None or ""

    Returns a new dict; neither input is modified.
    """
    if not isinstance(left, Mapping) or not isinstance(right, Mapping):
        raise TypeError("deep_merge expects two mappings")

    result = copy.deepcopy(dict(left))
    for key, value in right.items():
        if key not in result or _is_empty(result[key]):
            result[key] = copy.deepcopy(value)
            continue
        current = result[key]
        if isinstance(current, list) and isinstance(value, list):
            union: list[Any] = []
            for item in current + value:
                if item not in union:
                    union.append(copy.deepcopy(item))
            result[key] = union
        elif isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
    return result


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning("Ignoring invalid integer config value: %r", value)
        return default


def _float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        log.warning("Ignoring invalid number config value: %r", value)
        return default


def _bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return default


def _env_flag(environ: Mapping[str, str], var: str) -> bool | None:
    """Parse a boolean env var. Unset or unrecognized values give None."""
    value = environ.get(var, "").strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    if value:
        log.warning("Ignoring unrecognized value for %s: %r", var, value)
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    seen: list[str] = []
    for item in value:
        if isinstance(item, str) and item and item not in seen:
            seen.append(item)
    return seen


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


# ---------------------------------------------------------------------------
# Typed configuration
# ---------------------------------------------------------------------------

@dataclass
class MulticastSettings:
    address: str = MULTICAST_ADDR
    port: int = MULTICAST_PORT


@dataclass
class DNSSettings:
    domain: str = ""
    prefix: str = DNS_PREFIX


@dataclass
class DHTSettings:
    bootstrap: list[str] = field(default_factory=lambda: list(DHT_BOOTSTRAP))


@dataclass
class DiscoveryLimits:
    max_peers: int = MAX_PEERS
    timeout: float = PEER_TIMEOUT_SECS


@dataclass
class DiscoveryConfig:
    """Per-strategy toggles and parameters."""
    enabled: bool = True
    multicast_enabled: bool = True
    dht_enabled: bool = True
    dns_enabled: bool = False
    manual_enabled: bool = True
    manual_path: str = ""
    multicast: MulticastSettings = field(default_factory=MulticastSettings)
    dns: DNSSettings = field(default_factory=DNSSettings)
    dht: DHTSettings = field(default_factory=DHTSettings)
    limits: DiscoveryLimits = field(default_factory=DiscoveryLimits)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "methods": {
                "multicast": self.multicast_enabled,
                "dht": self.dht_enabled,
                "dns": self.dns_enabled,
                "manual": self.manual_enabled,
            },
            "multicast": {"address": self.multicast.address, "port": self.multicast.port},
            "dns": {"domain": self.dns.domain, "prefix": self.dns.prefix},
            "dht": {"bootstrap": list(self.dht.bootstrap)},
            "limits": {"max_peers": self.limits.max_peers, "timeout": self.limits.timeout},
            "manual": {"path": self.manual_path},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DiscoveryConfig":
        methods = _section(data, "methods")
        multicast = _section(data, "multicast")
        dns = _section(data, "dns")
        dht = _section(data, "dht")
        limits = _section(data, "limits")
        manual = _section(data, "manual")
        return cls(
            enabled=_bool(data.get("enabled"), True),
            multicast_enabled=_bool(methods.get("multicast"), True),
            dht_enabled=_bool(methods.get("dht"), True),
            dns_enabled=_bool(methods.get("dns"), False),
            manual_enabled=_bool(methods.get("manual"), True),
            manual_path=str(manual.get("path") or ""),
            multicast=MulticastSettings(
                address=str(multicast.get("address") or MULTICAST_ADDR),
                port=_int(multicast.get("port", MULTICAST_PORT), MULTICAST_PORT),
            ),
            dns=DNSSettings(
                domain=str(dns.get("domain") or ""),
                prefix=str(dns.get("prefix") or DNS_PREFIX),
            ),
            dht=DHTSettings(bootstrap=_str_list(dht.get("bootstrap", []))),
            limits=DiscoveryLimits(
                max_peers=_int(limits.get("max_peers", MAX_PEERS), MAX_PEERS),
                timeout=_float(limits.get("timeout", PEER_TIMEOUT_SECS), PEER_TIMEOUT_SECS),
            ),
        )


@dataclass
class TLSMaterial:
    key: str
    cert: str

    def exists(self) -> bool:
        return Path(self.key).is_file() and Path(self.cert).is_file()


@dataclass
class EnvConfig:
    """Settings for one named environment."""
    port: int = DEFAULT_PORT
    domain: str | None = None
    peers: list[str] = field(default_factory=list)
    www: str = ""
    tls: TLSMaterial | None = None
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"port", "domain", "peers", "www", "ssl", "discovery"})

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.extra)
        data.update({
            "port": self.port,
            "domain": self.domain,
            "peers": list(self.peers),
            "www": self.www,
            "discovery": self.discovery.to_dict(),
        })
        if self.tls:
            data["ssl"] = {"key": self.tls.key, "cert": self.tls.cert}
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EnvConfig":
        ssl = _section(data, "ssl")
        tls = None
        if ssl.get("key") and ssl.get("cert"):
            tls = TLSMaterial(key=str(ssl["key"]), cert=str(ssl["cert"]))
        domain = data.get("domain")
        return cls(
            port=_int(data.get("port", DEFAULT_PORT), DEFAULT_PORT),
            domain=str(domain) if domain else None,
            peers=_str_list(data.get("peers", [])),
            www=str(data.get("www") or ""),
            tls=tls,
            discovery=DiscoveryConfig.from_dict(_section(data, "discovery")),
            extra={k: copy.deepcopy(v) for k, v in data.items() if k not in cls._KNOWN},
        )


@dataclass
class Config:
    """Root configuration document with one sub-record per environment."""
    name: str | None = None
    environment: str = DEFAULT_ENV
    host: str = DEFAULT_HOST
    root: str = ""
    sync: str | None = None
    environments: dict[str, EnvConfig] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = frozenset({"name", "environment", "env", "host", "root", "sync"})

    def __post_init__(self) -> None:
        self.environments.setdefault(self.environment, EnvConfig())

    @property
    def active(self) -> EnvConfig:
        """The sub-record for the active environment (always present)."""
        return self.environments.setdefault(self.environment, EnvConfig())

    @property
    def node_name(self) -> str:
        return self.name or "localhost"

    def resolve_tls(self) -> TLSMaterial | None:
        """Return TLS material to serve with, or None for plain HTTP.

        Explicit paths win. In production with a domain, the Let's Encrypt
        live directory is used when both files are present.
        """
        env = self.active
        if env.tls:
            return env.tls if env.tls.exists() else None
        if self.environment == "production" and env.domain:
            live = Path("/etc/letsencrypt/live") / env.domain
            candidate = TLSMaterial(key=str(live / "privkey.pem"), cert=str(live / "cert.pem"))
            if candidate.exists():
                return candidate
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.extra)
        data.update({
            "name": self.name,
            "environment": self.environment,
            "host": self.host,
            "root": self.root,
            "sync": self.sync,
        })
        for env_name, env in self.environments.items():
            data[env_name] = env.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        environment = str(data.get("environment") or data.get("env") or DEFAULT_ENV)
        environments: dict[str, EnvConfig] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in cls._KNOWN:
                continue
            if isinstance(value, Mapping) and (
                key in ENVIRONMENTS or key == environment or "peers" in value or "port" in value
            ):
                environments[key] = EnvConfig.from_dict(value)
            else:
                extra[key] = copy.deepcopy(value)
        return cls(
            name=str(data["name"]) if data.get("name") else None,
            environment=environment,
            host=str(data.get("host") or DEFAULT_HOST),
            root=str(data.get("root") or ""),
            sync=str(data["sync"]) if data.get("sync") else None,
            environments=environments,
            extra=extra,
        )


def validate(config: Config) -> list[str]:
    """Check a config for values the node cannot start with. Returns errors."""
    errors: list[str] = []
    port = config.active.port
    if not 1 <= port <= 65535:
        errors.append(f"Invalid port number: {port}")
    if not config.host:
        errors.append("Host is required")
    if config.environment not in ENVIRONMENTS:
        errors.append(f"Environment must be one of: {', '.join(ENVIRONMENTS)}")
    tls = config.active.tls
    if tls and not tls.exists():
        errors.append(f"SSL key/cert files not found: {tls.key}, {tls.cert}")
    return errors


# ---------------------------------------------------------------------------
# Defaults and environment overrides
# ---------------------------------------------------------------------------

def default_document(root: Path | str) -> dict[str, Any]:
    """Built-in defaults, lowest priority layer."""
    www = str(Path(root) / "www")
    development = EnvConfig(domain="localhost", www=www).to_dict()
    production = EnvConfig(www=www).to_dict()
    return {
        "name": None,
        "environment": DEFAULT_ENV,
        "host": DEFAULT_HOST,
        "root": str(root),
        "sync": None,
        "development": development,
        "production": production,
    }


def env_overrides(environ: Mapping[str, str], environment: str) -> dict[str, Any]:
    """Translate process environment variables into a config layer.

    Per-environment values land under ``environment``.
    """
    doc: dict[str, Any] = {}
    if environ.get("NAME"):
        doc["name"] = environ["NAME"]
    if environ.get("HOST"):
        doc["host"] = environ["HOST"]
    if environ.get("AIR_SYNC_URL"):
        doc["sync"] = environ["AIR_SYNC_URL"]

    sub: dict[str, Any] = {}
    if environ.get("PORT"):
        port = _int(environ["PORT"], 0)
        if port:
            sub["port"] = port
    if environ.get("DOMAIN"):
        sub["domain"] = environ["DOMAIN"]
    if environ.get("SSL_KEY") and environ.get("SSL_CERT"):
        sub["ssl"] = {"key": environ["SSL_KEY"], "cert": environ["SSL_CERT"]}

    discovery: dict[str, Any] = {}
    scan = _env_flag(environ, "AIR_SCAN_ENABLED")
    if scan is not None:
        discovery["enabled"] = scan
    methods: dict[str, bool] = {}
    for var, method in (
        ("AIR_MULTICAST_ENABLED", "multicast"),
        ("AIR_DHT_ENABLED", "dht"),
        ("AIR_DNS_ENABLED", "dns"),
        ("AIR_MANUAL_ENABLED", "manual"),
    ):
        flag = _env_flag(environ, var)
        if flag is not None:
            methods[method] = flag
    if methods:
        discovery["methods"] = methods

    multicast: dict[str, Any] = {}
    if environ.get("AIR_MULTICAST_ADDR"):
        multicast["address"] = environ["AIR_MULTICAST_ADDR"]
    if environ.get("AIR_MULTICAST_PORT"):
        mport = _int(environ["AIR_MULTICAST_PORT"], 0)
        if mport:
            multicast["port"] = mport
    if multicast:
        discovery["multicast"] = multicast

    dns: dict[str, str] = {}
    if environ.get("AIR_DNS_DOMAIN"):
        dns["domain"] = environ["AIR_DNS_DOMAIN"]
    if environ.get("AIR_DNS_PREFIX"):
        dns["prefix"] = environ["AIR_DNS_PREFIX"]
    if dns:
        discovery["dns"] = dns

    if environ.get("AIR_DHT_BOOTSTRAP"):
        bootstrap = [p.strip() for p in environ["AIR_DHT_BOOTSTRAP"].split(",") if p.strip()]
        discovery["dht"] = {"bootstrap": bootstrap}

    limits: dict[str, Any] = {}
    if environ.get("AIR_MAX_PEERS"):
        max_peers = _int(environ["AIR_MAX_PEERS"], 0)
        if max_peers:
            limits["max_peers"] = max_peers
    if environ.get("AIR_PEER_TIMEOUT"):
        timeout = _float(environ["AIR_PEER_TIMEOUT"], 0.0)
        if timeout:
            limits["timeout"] = timeout
    if limits:
        discovery["limits"] = limits

    if environ.get("AIR_MANUAL_PEERS"):
        discovery["manual"] = {"path": environ["AIR_MANUAL_PEERS"]}

    if discovery:
        sub["discovery"] = discovery
    if sub:
        doc[environment] = sub
    return doc


def _environment_from(environ: Mapping[str, str]) -> str:
    return environ.get("AIR_ENV") or environ.get("NODE_ENV") or environ.get("ENV") or ""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConfigStore:
    """Loads, merges and persists the node configuration.

    Usage:
        store = ConfigStore()
        config = store.load()
        config.active.peers.append("10.0.0.2:8765")
        await store.persist()
    """

    def __init__(
        self,
        paths: AirPaths | None = None,
        environ: Mapping[str, str] | None = None,
        path: Path | None = None,
    ) -> None:
        self.environ: Mapping[str, str] = os.environ if environ is None else environ
        self.paths = paths or resolve_paths(self.environ)
        self.path = Path(path) if path else self.paths.config_file
        self.version = 0
        self._config: Config | None = None
        self._write_lock = asyncio.Lock()

    @property
    def config(self) -> Config:
        if self._config is None:
            return self.load()
        return self._config

    def read_file(self) -> dict[str, Any]:
        """Read the persisted document. Missing file reads as empty."""
        if not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigParseError(f"Invalid JSON in {self.path}: {e}") from e
        except OSError as e:
            raise ConfigParseError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigParseError(f"Config root must be a JSON object: {self.path}")
        if "environment" not in data and "env" in data:
            data["environment"] = data.pop("env")
        return data

    def load(self) -> Config:
        """Build the active config from defaults, file and environment."""
        if self.path == self.paths.config_file:
            try:
                self.paths.migrate_legacy()
            except OSError as e:
                log.warning("Legacy config migration failed: %s", e)

        try:
            file_doc = self.read_file()
        except ConfigParseError as e:
            log.warning("Failed to load config, using defaults: %s", e)
            file_doc = {}

        environment = (
            _environment_from(self.environ)
            or str(file_doc.get("environment") or "")
            or DEFAULT_ENV
        )
        overrides = env_overrides(self.environ, environment)
        overrides["environment"] = environment

        merged = deep_merge(deep_merge(overrides, file_doc), default_document(self.paths.root))
        self._config = Config.from_dict(merged)
        log.debug("Loaded config for environment %s from %s", environment, self.path)
        return self._config

    def _serialize(self, config: Config) -> str:
        data = json.dumps(config.to_dict(), indent=4)
        try:
            json.loads(data)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Refusing to write invalid config: {e}") from e
        return data

    def _write_text(self, data: str) -> None:
        """Atomically replace the config file (temp + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), suffix=".tmp", prefix=".config_"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self.version += 1

    def save(self, config: Config | None = None) -> Path:
        """Validate and write the config synchronously."""
        if config is not None:
            self._config = config
        self._write_text(self._serialize(self.config))
        log.info("Configuration saved to %s", self.path)
        return self.path

    async def persist(self) -> None:
        """Write the live config from inside the event loop.

        Writers are serialized and each one snapshots the config when its
        turn comes, so an older snapshot never lands after a newer one.
        """
        async with self._write_lock:
            data = self._serialize(self.config)
            await asyncio.to_thread(self._write_text, data)
        log.debug("Configuration persisted (version %d)", self.version)

    def update(self, changes: Mapping[str, Any]) -> Config:
        """Merge ``changes`` over the current config and save."""
        merged = deep_merge(changes, self.config.to_dict())
        self._config = Config.from_dict(merged)
        self.save()
        return self._config

    def reset(self) -> Config:
        """Overwrite the file with built-in defaults."""
        self._config = Config.from_dict(default_document(self.paths.root))
        self.save()
        log.info("Configuration reset to defaults")
        return self._config

    async def sync_remote(self, url: str | None = None, timeout: float = 10.0) -> bool:
        """Pull a shared config document and merge it under local values.

        Returns False when no sync URL is configured.
        """
        url = url or self.config.sync
        if not url:
            return False

        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    raise ConfigError(f"Config sync failed: HTTP {response.status} from {url}")
                remote = await response.json(content_type=None)

        if not isinstance(remote, dict):
            raise ConfigParseError(f"Remote config from {url} is not a JSON object")

        merged = deep_merge(self.config.to_dict(), remote)
        self._config = Config.from_dict(merged)
        await self.persist()
        log.info("Synced config from %s", url)
        return True
