"""
Filesystem layout — XDG base directories for config, state and data.

Layout:
    $XDG_CONFIG_HOME/air/config.json        — configuration document
    $XDG_CONFIG_HOME/air/manual-peers.json  — operator peer list
    $XDG_STATE_HOME/air/air.lock            — singleton lock record
    $XDG_STATE_HOME/air/air.pid             — process id
    $XDG_DATA_HOME/air/shared/              — graph storage shared by all instances

Each directory can be moved with AIR_CONFIG_DIR, AIR_STATE_DIR or AIR_DATA_DIR.
Paths are resolved at call time so the environment can change between calls.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from air import APP_NAME

log = logging.getLogger(__name__)


def _xdg(environ: Mapping[str, str], var: str, *fallback: str) -> Path:
    value = environ.get(var, "")
    if value:
        return Path(value)
    return Path.home().joinpath(*fallback)


@dataclass(frozen=True)
class AirPaths:
    """Resolved locations for one Air installation."""
    root: Path
    config_dir: Path
    state_dir: Path
    data_dir: Path

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def manual_peers_file(self) -> Path:
        return self.config_dir / "manual-peers.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / f"{APP_NAME}.lock"

    @property
    def pid_file(self) -> Path:
        return self.state_dir / f"{APP_NAME}.pid"

    @property
    def shared_data_dir(self) -> Path:
        return self.data_dir / "shared"

    @property
    def ddns_file(self) -> Path:
        return self.root / "ddns.json"

    @property
    def legacy_config_file(self) -> Path:
        return self.root / f"{APP_NAME}.json"

    def ensure(self) -> None:
        """Create the config, state and data directories."""
        for directory in (self.config_dir, self.state_dir, self.data_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def migrate_legacy(self) -> bool:
        """Copy ``<root>/air.json`` to the config path once.

        Returns True if a file was migrated.
        """
        legacy = self.legacy_config_file
        if not legacy.is_file() or self.config_file.exists():
            return False
        self.config_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(legacy, self.config_file)
        log.info("Migrated %s -> %s", legacy, self.config_file)
        return True

    def as_dict(self) -> dict[str, str]:
        return {
            "root": str(self.root),
            "config": str(self.config_dir),
            "state": str(self.state_dir),
            "data": str(self.data_dir),
            "config_file": str(self.config_file),
            "lock_file": str(self.lock_file),
            "pid_file": str(self.pid_file),
        }


def resolve_paths(environ: Mapping[str, str] | None = None) -> AirPaths:
    """Resolve Air paths from the environment (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ

    config_dir = env.get("AIR_CONFIG_DIR") or _xdg(env, "XDG_CONFIG_HOME", ".config") / APP_NAME
    state_dir = env.get("AIR_STATE_DIR") or _xdg(env, "XDG_STATE_HOME", ".local", "state") / APP_NAME
    data_dir = env.get("AIR_DATA_DIR") or _xdg(env, "XDG_DATA_HOME", ".local", "share") / APP_NAME
    root = env.get("AIR_ROOT") or os.getcwd()

    return AirPaths(
        root=Path(root),
        config_dir=Path(config_dir),
        state_dir=Path(state_dir),
        data_dir=Path(data_dir),
    )
