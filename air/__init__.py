"""
Air — launch and supervise a node of the Air peer-to-peer graph network.

Architecture:
    Lock:       one server per host, PID-tagged lock file in $XDG_STATE_HOME/air/
    Listener:   websocket listener supervised with a bounded restart policy
    Registry:   node identity + heartbeat published into the shared graph
    Discovery:  manual file, DHT bootstrap, LAN multicast and DNS strategies
"""

__version__ = "0.1.0"

APP_NAME = "air"

# Node defaults
DEFAULT_PORT = 8765
DEFAULT_HOST = "0.0.0.0"
DEFAULT_ENV = "development"
ENVIRONMENTS = ("development", "production", "staging")

# Supervisor
MAX_RESTARTS = 5
RESTART_DELAY_SECS = 5.0

# Singleton lock: a record older than this is abandoned regardless of pid
LOCK_TIMEOUT_SECS = 10 * 60

# Registry intervals
HEARTBEAT_INTERVAL_SECS = 60
DDNS_INTERVAL_SECS = 5 * 60
IP_INTERVAL_SECS = 5 * 60
CONFIG_SYNC_INTERVAL_SECS = 60 * 60
IP_SERVICE_URL = "https://api.ipify.org?format=json"

# Graph layout
GRAPH_ROOT = "air"
GRAPH_PATH = "/gun"
GRAPH_PROTOCOL_VERSION = "1.0"
GRAPH_MAX_MESSAGE = 1 * 1024 * 1024  # 1MB per websocket frame

# Discovery defaults
MULTICAST_ADDR = "239.255.42.99"
MULTICAST_PORT = 8766
MULTICAST_INTERVAL_SECS = 30
DNS_PREFIX = "air-node"
DNS_INTERVAL_SECS = 5 * 60
DHT_BOOTSTRAP: list[str] = []
MAX_PEERS = 50
PEER_TIMEOUT_SECS = 5.0
