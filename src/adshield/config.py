"""
Configuration and path management for adshield.
"""

import json
import os
import sys
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

DEFAULT_FILTER_URL = (
    "https://raw.githubusercontent.com/AriaMahdrani/tekeli-browser-filters/main/youtube-filters.json"
)
DEFAULT_HOSTS_URL = "https://raw.githubusercontent.com/StevenBlack/hosts/master/hosts"
DEFAULT_EASYLIST_URL = "https://easylist.to/easylist/easylist.txt"

EVICTION_POLICIES = ("clear", "half")


@dataclass
class AdshieldConfig:
    """Main configuration."""

    # Switches
    adblock_enabled: bool = True
    tracker_blocking: bool = True
    strip_tracking_params: bool = True

    # Remote sources
    filter_url: str = DEFAULT_FILTER_URL
    hosts_url: str = DEFAULT_HOSTS_URL
    easylist_url: str = DEFAULT_EASYLIST_URL

    # Refresh scheduling (seconds)
    update_interval: float = 86400  # 24 hours
    update_check_period: float = 3600
    config_fetch_timeout: float = 10
    list_fetch_timeout: float = 12

    # Parser and compiler limits
    max_hosts_domains: int = 50000
    max_easylist_patterns: int = 2500
    max_pattern_length: int = 256

    # Decision cache
    cache_capacity: int = 1000
    cache_eviction: Literal["clear", "half"] = "clear"

    # Page suppression
    suppression_hosts: list[str] = field(default_factory=lambda: ["youtube.com"])
    check_interval: float = 0.1
    observer_debounce: float = 0.05
    max_skip_attempts: int = 10

    cache_dir: str | None = None  # None = <data dir>/filters

    @classmethod
    def load(cls, path: Path | None = None) -> "AdshieldConfig":
        """Load configuration from file."""
        if path is None:
            path = get_config_dir() / "config.json"

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        defaults = cls()
        cache_eviction = data.get("cache_eviction", defaults.cache_eviction)
        if cache_eviction not in EVICTION_POLICIES:
            warnings.warn(
                f"Unknown cache_eviction {cache_eviction!r}, using {defaults.cache_eviction!r}.",
                UserWarning,
                stacklevel=2,
            )
            cache_eviction = defaults.cache_eviction

        return cls(
            adblock_enabled=data.get("adblock_enabled", True),
            tracker_blocking=data.get("tracker_blocking", True),
            strip_tracking_params=data.get("strip_tracking_params", True),
            filter_url=data.get("filter_url", DEFAULT_FILTER_URL),
            hosts_url=data.get("hosts_url", DEFAULT_HOSTS_URL),
            easylist_url=data.get("easylist_url", DEFAULT_EASYLIST_URL),
            update_interval=data.get("update_interval", defaults.update_interval),
            update_check_period=data.get("update_check_period", defaults.update_check_period),
            config_fetch_timeout=data.get("config_fetch_timeout", defaults.config_fetch_timeout),
            list_fetch_timeout=data.get("list_fetch_timeout", defaults.list_fetch_timeout),
            max_hosts_domains=data.get("max_hosts_domains", defaults.max_hosts_domains),
            max_easylist_patterns=data.get("max_easylist_patterns", defaults.max_easylist_patterns),
            max_pattern_length=data.get("max_pattern_length", defaults.max_pattern_length),
            cache_capacity=data.get("cache_capacity", defaults.cache_capacity),
            cache_eviction=cache_eviction,
            suppression_hosts=data.get("suppression_hosts", defaults.suppression_hosts),
            check_interval=data.get("check_interval", defaults.check_interval),
            observer_debounce=data.get("observer_debounce", defaults.observer_debounce),
            max_skip_attempts=data.get("max_skip_attempts", defaults.max_skip_attempts),
            cache_dir=data.get("cache_dir"),
        )

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = get_config_dir() / "config.json"

        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "adblock_enabled": self.adblock_enabled,
            "tracker_blocking": self.tracker_blocking,
            "strip_tracking_params": self.strip_tracking_params,
            "filter_url": self.filter_url,
            "hosts_url": self.hosts_url,
            "easylist_url": self.easylist_url,
            "update_interval": self.update_interval,
            "update_check_period": self.update_check_period,
            "config_fetch_timeout": self.config_fetch_timeout,
            "list_fetch_timeout": self.list_fetch_timeout,
            "max_hosts_domains": self.max_hosts_domains,
            "max_easylist_patterns": self.max_easylist_patterns,
            "max_pattern_length": self.max_pattern_length,
            "cache_capacity": self.cache_capacity,
            "cache_eviction": self.cache_eviction,
            "suppression_hosts": self.suppression_hosts,
            "check_interval": self.check_interval,
            "observer_debounce": self.observer_debounce,
            "max_skip_attempts": self.max_skip_attempts,
            "cache_dir": self.cache_dir,
        }

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def get_cache_dir(self) -> Path:
        """Get the directory holding cached filter sources."""
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return get_data_dir() / "filters"


def get_config_dir() -> Path:
    """Get config directory following platform conventions."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / "adshield"


def get_data_dir() -> Path:
    """Get data directory for cached filter lists."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "adshield"
