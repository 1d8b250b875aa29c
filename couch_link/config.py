"""
Configuration for Couch Link.

Settings come from DEFAULT_CONFIG overlaid with the first YAML file found
(see get_config_paths), then with command line flags.
"""

import copy
import ipaddress
import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    "control": {
        "host": "127.0.0.1",
        "port": 8765,
    },
    "command_server": {
        "host": "0.0.0.0",
        "chunk_size": 1024,
        "autostart": True,
    },
    "presence": {
        "service_type": "_couchlink._tcp.local.",
        "instance_name": "auto",
        "port": 9001,
        "txt": ["role=desktop"],
        "autostart": False,
        "ip_version": "all",
    },
    "goodbye": {
        "settle": 0.1,
        "repeats": 3,
        "spacing": 0.2,
        "repeat_settle": 0.05,
        "final_delay": 0.3,
    },
    "discovery": {
        "service_type": "",
        "request_timeout_ms": 3000,
        "autostart": False,
    },
    "lifecycle": {
        "propagation_delay": 0.75,
        "soft_timeout": 3.0,
    },
    "logging": {
        "level": "INFO",
    },
}


# Explicit config file, checked before the search paths
CONFIG_ENV_VAR = "COUCH_LINK_CONFIG"


def get_config_paths() -> list[Path]:
    """Candidate config files, highest priority first."""
    candidates = []

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path).expanduser())

    candidates.append(Path.cwd() / "config.yaml")

    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_home:
        candidates.append(Path(xdg_home) / "couch-link" / "config.yaml")

    home = Path.home()
    candidates += [
        home / ".config" / "couch-link" / "config.yaml",
        home / ".couch-link.yaml",
    ]
    return candidates


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay override on base. Neither input is modified."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def read_yaml(path: Path) -> Optional[Dict[str, Any]]:
    """Read one YAML mapping. Returns None (and warns) if the file is unusable."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        return None

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top level must be a mapping")
        return None
    return data


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    The first config file that exists is overlaid on DEFAULT_CONFIG; the
    remaining candidates are not read.

    Args:
        config_path: Use only this file instead of the search paths
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    candidates = [config_path] if config_path else get_config_paths()

    path = next((p for p in candidates if p.exists()), None)
    if path is None:
        return config

    overrides = read_yaml(path)
    if overrides:
        config = deep_merge(config, overrides)
        logger.debug(f"Loaded config from {path}")
    return config


def get_local_addresses() -> List[str]:
    """
    Enumerate the non-loopback addresses of every local interface.

    IPv4 addresses come first, then IPv6. Link-local IPv6 addresses are
    skipped because they need a scope id peers cannot use.

    Returns:
        Address strings in interface order, without duplicates.
    """
    import netifaces

    v4: List[str] = []
    v6: List[str] = []

    for iface in netifaces.interfaces():
        try:
            addrs = netifaces.ifaddresses(iface)
        except ValueError:
            # Interface vanished between listing and querying
            continue

        for family, bucket in ((netifaces.AF_INET, v4), (netifaces.AF_INET6, v6)):
            for entry in addrs.get(family, []):
                raw = entry.get("addr", "").split("%", 1)[0]
                try:
                    ip = ipaddress.ip_address(raw)
                except ValueError:
                    continue
                if ip.is_loopback or (ip.version == 6 and ip.is_link_local):
                    continue
                if raw not in bucket:
                    bucket.append(raw)

    return v4 + v6


def get_local_ip() -> str:
    """
    Address shown to users in banners.

    Returns:
        First non-loopback IPv4 address (e.g., "192.168.1.100"),
        or "127.0.0.1" when none is available.
    """
    for address in get_local_addresses():
        if ipaddress.ip_address(address).version == 4:
            return address
    return "127.0.0.1"


class Config:
    """Typed, read-mostly view of the effective settings."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config = load_config(config_path)

    def set(self, section: str, key: str, value: Any) -> None:
        """Override a single setting (used for CLI flags)."""
        self._config.setdefault(section, {})[key] = value

    @property
    def control_host(self) -> str:
        return self._config["control"]["host"]

    @property
    def control_port(self) -> int:
        return int(self._config["control"]["port"])

    @property
    def events_port(self) -> int:
        """WebSocket event stream listens next to the control API."""
        return self.control_port + 1

    @property
    def command_host(self) -> str:
        return self._config["command_server"]["host"]

    @property
    def chunk_size(self) -> int:
        return max(1, int(self._config["command_server"]["chunk_size"]))

    @property
    def command_autostart(self) -> bool:
        return bool(self._config["command_server"]["autostart"])

    @property
    def service_type(self) -> str:
        return self._config["presence"]["service_type"]

    @property
    def instance_name(self) -> str:
        name = self._config["presence"]["instance_name"]
        if not name or name == "auto":
            return f"CouchLink-{socket.gethostname().split('.')[0]}"
        return name

    @property
    def service_port(self) -> int:
        return int(self._config["presence"]["port"])

    @property
    def txt(self) -> List[str]:
        return [str(rec) for rec in self._config["presence"]["txt"] or []]

    @property
    def presence_autostart(self) -> bool:
        return bool(self._config["presence"]["autostart"])

    @property
    def ip_version(self) -> str:
        return self._config["presence"]["ip_version"]

    @property
    def goodbye(self) -> Dict[str, Any]:
        return dict(self._config["goodbye"])

    @property
    def discovery_service_type(self) -> str:
        return self._config["discovery"]["service_type"] or self.service_type

    @property
    def request_timeout_ms(self) -> int:
        return int(self._config["discovery"]["request_timeout_ms"])

    @property
    def discovery_autostart(self) -> bool:
        return bool(self._config["discovery"]["autostart"])

    @property
    def propagation_delay(self) -> float:
        return float(self._config["lifecycle"]["propagation_delay"])

    @property
    def soft_timeout(self) -> float:
        return float(self._config["lifecycle"]["soft_timeout"])

    @property
    def log_level(self) -> str:
        return str(self._config["logging"]["level"]).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy of the raw settings."""
        return copy.deepcopy(self._config)
