"""
Parsers for the three filter sources.

- the curated JSON config (``FilterConfig``), validated before use
- hosts files (``<ip> <hostname> [# comment]``)
- a subset of the ABP/EasyList network rule syntax

The list parsers are forgiving: a line they cannot use is skipped and parsing
continues until the input or the cap runs out.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOSTS_DOMAINS = 50000
DEFAULT_MAX_EASYLIST_PATTERNS = 2500

_DOMAIN_RE = re.compile(r"^[a-z0-9.-]+$")

# Hosts-file entries that name the local machine rather than a tracker
_LOCAL_HOSTNAMES = frozenset(
    {
        "localhost",
        "localhost.localdomain",
        "local",
        "broadcasthost",
        "ip6-localhost",
        "ip6-loopback",
        "0.0.0.0",
    }
)

# Remote schema key -> attribute name
_LIST_FIELDS = {
    "networkPatterns": "network_patterns",
    "domSelectors": "dom_selectors",
    "videoAdIndicators": "video_ad_indicators",
    "skipButtonSelectors": "skip_button_selectors",
    "adContainerSelectors": "ad_container_selectors",
}
_REQUIRED_LIST_FIELDS = (
    "networkPatterns",
    "domSelectors",
    "videoAdIndicators",
    "skipButtonSelectors",
)


class FilterValidationError(ValueError):
    """A filter config payload does not match the expected schema."""


@dataclass(frozen=True)
class FilterConfig:
    """Curated ad/video-ad filter configuration.

    Replaced wholesale when a remote fetch yields a new version; never mutated.
    """

    version: str
    last_updated: str = ""
    network_patterns: tuple[str, ...] = field(default_factory=tuple)
    dom_selectors: tuple[str, ...] = field(default_factory=tuple)
    video_ad_indicators: tuple[str, ...] = field(default_factory=tuple)
    skip_button_selectors: tuple[str, ...] = field(default_factory=tuple)
    ad_container_selectors: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the remote JSON schema."""
        data: dict[str, Any] = {
            "version": self.version,
            "lastUpdated": self.last_updated,
        }
        for key, attr in _LIST_FIELDS.items():
            data[key] = list(getattr(self, attr))
        return data


def parse_filter_config(data: Any) -> FilterConfig:
    """Validate a decoded JSON payload and build a ``FilterConfig``.

    Raises:
        FilterValidationError: if the payload does not match the schema.
    """
    if not isinstance(data, dict):
        raise FilterValidationError("filter config must be an object")

    version = data.get("version")
    if not isinstance(version, str) or not version:
        raise FilterValidationError("filter config has no string version")

    for key in _REQUIRED_LIST_FIELDS:
        if not isinstance(data.get(key), list):
            raise FilterValidationError(f"filter config field {key} must be an array")

    containers = data.get("adContainerSelectors", [])
    if not isinstance(containers, list):
        raise FilterValidationError("filter config field adContainerSelectors must be an array")

    last_updated = data.get("lastUpdated", "")
    if not isinstance(last_updated, str):
        last_updated = str(last_updated)

    lists: dict[str, tuple[str, ...]] = {}
    for key, attr in _LIST_FIELDS.items():
        values = data.get(key, [])
        lists[attr] = tuple(v for v in values if isinstance(v, str) and v)

    return FilterConfig(version=version, last_updated=last_updated, **lists)


def parse_hosts(content: str, max_domains: int = DEFAULT_MAX_HOSTS_DOMAINS) -> frozenset[str]:
    """Parse a hosts file into a set of lowercase domains.

    Stops once ``max_domains`` domains have been collected.
    """
    domains: set[str] = set()
    if max_domains <= 0:
        return frozenset()

    for line in content.splitlines():
        hash_idx = line.find("#")
        if hash_idx != -1:
            line = line[:hash_idx]
        parts = line.split()

        # Need at least "<ip> <hostname>"
        if len(parts) < 2:
            continue

        domain = parts[1].lower()
        if domain in _LOCAL_HOSTNAMES or domain.endswith(".local"):
            continue
        if not _DOMAIN_RE.match(domain):
            continue

        domains.add(domain)
        if len(domains) >= max_domains:
            logger.debug("Hosts parser reached cap of %d domains", max_domains)
            break

    return frozenset(domains)


def parse_easylist_rule(line: str) -> str | None:
    """Reduce one EasyList line to a block pattern, or None if it has none."""
    rule = line.strip()

    # Skip empty lines, comments and section headers
    if not rule or rule.startswith("!") or rule.startswith("["):
        return None

    # Cosmetic rules and exceptions never contribute block patterns
    if "##" in rule or "#@#" in rule or "#?#" in rule:
        return None
    if rule.startswith("@@"):
        return None

    # Strip options
    dollar = rule.find("$")
    if dollar != -1:
        rule = rule[:dollar]
    rule = rule.strip()
    if not rule:
        return None

    # Regex rules are not part of the supported subset
    if rule.startswith("/") and rule.endswith("/") and len(rule) > 2:
        return None

    if rule.startswith("||"):
        rule = rule[2:]
        for sep in "/^":
            idx = rule.find(sep)
            if idx != -1:
                rule = rule[:idx]
    else:
        rule = rule.strip("|")
        if rule.endswith("^"):
            rule = rule[:-1]

    return rule or None


def parse_easylist(
    content: str, max_patterns: int = DEFAULT_MAX_EASYLIST_PATTERNS
) -> tuple[str, ...]:
    """Parse EasyList network rules into an ordered tuple of patterns."""
    patterns: list[str] = []
    if max_patterns <= 0:
        return ()

    for line in content.splitlines():
        pattern = parse_easylist_rule(line)
        if pattern is None:
            continue

        patterns.append(pattern)
        if len(patterns) >= max_patterns:
            logger.debug("EasyList parser reached cap of %d patterns", max_patterns)
            break

    return tuple(patterns)
