"""
Air CLI — run and inspect an Air peer.

Commands:
  air start              - Start the Air node (foreground)
  air status             - Show lock state, identity and configured peers
  air config             - Print the merged configuration (or --reset it)
  air discovery status   - Show discovery strategies and the peer list
  air discovery start    - Run manual, DHT and DNS discovery once
  air discovery global   - DHT bootstrap only (multicast and DNS off)
  air discovery local    - Listen for LAN multicast beacons for a while
  air discovery add      - Add a peer address to the active environment
  air unlock             - Remove a leftover lock file
"""

from __future__ import annotations

import argparse
import json
import sys


def cmd_start(args: argparse.Namespace) -> None:
    """Start the Air node in foreground mode."""
    from air.p2p.node import run_node

    sys.exit(run_node(port=args.port, environment=args.env))


def cmd_status(args: argparse.Namespace) -> None:
    """Show lock state, identity and configured peers."""
    from air.config import ConfigStore
    from air.p2p.node import describe_status

    info = describe_status(ConfigStore())
    if args.json:
        print(json.dumps(info, indent=2))
        return

    print(f"Air {info['version']}")
    if info["lock"] == "locked":
        print(f"  status:      running (PID {info['pid']}, port {info['running_port']})")
    elif info["lock"] == "stale":
        print(f"  status:      stopped (stale lock from PID {info['pid']}, run 'air unlock')")
    else:
        print("  status:      stopped")
    print(f"  name:        {info['name']}")
    print(f"  environment: {info['environment']}")
    print(f"  port:        {info['port']}")
    print(f"  domain:      {info['domain'] or '-'}")
    print(f"  peers:       {len(info['peers'])}")
    print(f"  config:      {info['paths']['config_file']}")


def cmd_config(args: argparse.Namespace) -> None:
    """Print the merged configuration."""
    from air.config import ConfigStore, validate

    store = ConfigStore()
    if args.reset:
        store.reset()
        print(f"Configuration reset: {store.path}")
        return

    config = store.load()
    print(json.dumps(config.to_dict(), indent=2))
    for error in validate(config):
        print(f"Warning: {error}", file=sys.stderr)


def _engine():
    from air.config import ConfigStore
    from air.p2p.discovery import PeerDiscoveryEngine
    from air.p2p.scheduler import Scheduler

    store = ConfigStore()
    store.load()
    return PeerDiscoveryEngine(store, Scheduler())


def cmd_discovery_status(args: argparse.Namespace) -> None:
    """Show which strategies are enabled and the current peer list."""
    info = _engine().status()
    if args.json:
        print(json.dumps(info, indent=2))
        return

    print(f"Discovery: {'enabled' if info['enabled'] else 'disabled'}")
    for method, enabled in info["methods"].items():
        print(f"  {method:<10} {'on' if enabled else 'off'}")
    print(f"  manual file: {info['manual_path']}")
    if info["dns_domain"]:
        print(f"  dns domain:  {info['dns_domain']}")
    if not info["peers"]:
        print("\nNo known peers.")
        return
    print(f"\nKnown peers: {len(info['peers'])}\n")
    for peer in info["peers"]:
        print(f"  {peer}")


def _print_added(added: list[str]) -> None:
    if not added:
        print("No new peers found.")
        return
    print(f"Added {len(added)} peer(s):")
    for peer in added:
        print(f"  {peer}")


async def _run_preset(engine, multicast: bool, dht: bool, run) -> list[str]:
    from air.config import ConfigError
    from air.p2p.discovery import DiscoveryIOError

    # The toggles hold for this run only; the saved file keeps the user's
    discovery = engine.discovery
    saved = (discovery.enabled, discovery.multicast_enabled,
             discovery.dht_enabled, discovery.dns_enabled)
    discovery.enabled = True
    discovery.multicast_enabled = multicast
    discovery.dht_enabled = dht
    discovery.dns_enabled = False
    try:
        added = await run()
    finally:
        (discovery.enabled, discovery.multicast_enabled,
         discovery.dht_enabled, discovery.dns_enabled) = saved
    if added:
        try:
            await engine.store.persist()
        except (OSError, ConfigError) as e:
            raise DiscoveryIOError(f"Cannot save discovered peers: {e}") from e
    return added


def cmd_discovery_start(args: argparse.Namespace) -> None:
    """Run the one-shot strategies and report what they found."""
    import asyncio

    from air.p2p.discovery import DiscoveryIOError

    engine = _engine()
    try:
        added = asyncio.run(engine.scan_once())
    except DiscoveryIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    _print_added(added)


def cmd_discovery_global(args: argparse.Namespace) -> None:
    """Seed the DHT bootstrap list with multicast and DNS switched off."""
    import asyncio

    from air.p2p.discovery import DiscoveryIOError

    engine = _engine()
    print("Global discovery: DHT bootstrap")
    try:
        added = asyncio.run(_run_preset(engine, False, True, engine.scan_once))
    except DiscoveryIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_added(added)


def cmd_discovery_local(args: argparse.Namespace) -> None:
    """Announce and listen on the LAN multicast group for a while."""
    import asyncio

    from air.p2p.discovery import DiscoveryIOError

    engine = _engine()
    settings = engine.discovery.multicast
    print(f"Local discovery: listening on {settings.address}:{settings.port} for {args.seconds:g}s")
    try:
        added = asyncio.run(
            _run_preset(engine, True, False, lambda: engine.listen(args.seconds))
        )
    except DiscoveryIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_added(added)


def cmd_discovery_add(args: argparse.Namespace) -> None:
    """Add a peer address to the active environment."""
    import asyncio

    from air.p2p.graph import GraphError, peer_url

    address = args.address.strip()
    try:
        peer_url(address)
    except GraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    engine = _engine()
    if asyncio.run(engine.add_peer(address)):
        print(f"Added peer {address}")
    else:
        print(f"Peer {address} already known")


def cmd_unlock(args: argparse.Namespace) -> None:
    """Remove lock and PID files left behind by a crashed node."""
    from air.lock import LockManager, LockState
    from air.paths import resolve_paths

    lock = LockManager.from_paths(resolve_paths())
    state, record = lock.inspect()
    if state is LockState.LOCKED and not args.force:
        print(
            f"Error: Air is running (PID {record.pid}). Stop it first or use --force.",
            file=sys.stderr,
        )
        sys.exit(1)

    removed = lock.force_cleanup()
    if not removed:
        print("No lock files found.")
        return
    for path in removed:
        print(f"Removed {path}")


def build_parser() -> argparse.ArgumentParser:
    from air import __version__

    parser = argparse.ArgumentParser(
        prog="air",
        description="Air — run a peer of the Air graph network.",
    )
    parser.add_argument("--version", action="version", version=f"air {__version__}")
    sub = parser.add_subparsers(dest="command")

    # start
    p_start = sub.add_parser("start", help="Start the Air node (foreground)")
    p_start.add_argument("--port", type=int, help="Listen port (overrides config)")
    p_start.add_argument("--env", help="Environment name (development, production, ...)")

    # status
    p_status = sub.add_parser("status", help="Show node status")
    p_status.add_argument("--json", action="store_true", help="Print JSON")

    # config
    p_config = sub.add_parser("config", help="Show the merged configuration")
    p_config.add_argument("--reset", action="store_true", help="Overwrite the file with defaults")

    # discovery
    p_disc = sub.add_parser("discovery", help="Peer discovery")
    disc_sub = p_disc.add_subparsers(dest="discovery_command")
    p_ds = disc_sub.add_parser("status", help="Show discovery strategies and peers")
    p_ds.add_argument("--json", action="store_true", help="Print JSON")
    disc_sub.add_parser("start", help="Run manual, DHT and DNS discovery once")
    disc_sub.add_parser("global", help="Run DHT bootstrap discovery only")
    p_dl = disc_sub.add_parser("local", help="Listen for LAN multicast beacons")
    p_dl.add_argument(
        "--seconds", type=float, default=35.0,
        help="How long to listen (default: 35, one beacon interval plus margin)",
    )
    p_da = disc_sub.add_parser("add", help="Add a peer address")
    p_da.add_argument("address", help="Peer address (host:port or ws(s)/http(s) URL)")

    # unlock
    p_unlock = sub.add_parser("unlock", help="Remove a leftover lock file")
    p_unlock.add_argument("--force", action="store_true", help="Remove even if the owner is alive")

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print("Air — peer-to-peer graph node")
        print()
        print("Usage:")
        print("  air start [--port N] [--env NAME]")
        print("  air status [--json]")
        print("  air config [--reset]")
        print("  air discovery {status|start|global|local|add <address>}")
        print("  air unlock [--force]")
        print()
        print("Run 'air <command> --help' for details on any command.")
        sys.exit(0)

    if args.command == "discovery":
        discovery_commands = {
            "status": cmd_discovery_status,
            "start": cmd_discovery_start,
            "global": cmd_discovery_global,
            "local": cmd_discovery_local,
            "add": cmd_discovery_add,
        }
        dc = getattr(args, "discovery_command", None)
        if not dc:
            # bare "air discovery" shows status
            args.json = False
            dc = "status"
        discovery_commands[dc](args)
        return

    commands = {
        "start": cmd_start,
        "status": cmd_status,
        "config": cmd_config,
        "unlock": cmd_unlock,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
