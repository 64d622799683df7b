"""
Air P2P — listener supervision, identity publication and peer discovery.

Modules:
    protocol    — Graph wire protocol: message types, JSON text frames, validation
    graph       — Replicated graph store: websocket listener, peer sessions, put/get
    scheduler   — Cancellable recurring tasks owned by one scheduler
    supervisor  — Listener binding with a bounded restart policy
    registry    — Node identity record, DDNS/IP refresh and heartbeat
    discovery   — Manual, DHT bootstrap, multicast and DNS peer discovery
    node        — Ordered startup sequence + main event loop (foreground node)
"""

from air import DEFAULT_PORT, GRAPH_PROTOCOL_VERSION

__all__ = [
    "GRAPH_PROTOCOL_VERSION",
    "DEFAULT_PORT",
]
