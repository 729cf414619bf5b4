"""
Synchronous URL classifier for the request interception path.

``classify`` never performs I/O. Everything it reads is either a module
constant or the ``_CompiledSources`` object pushed in by the filter list
manager through ``update_sources``; that object is immutable and replaced in a
single assignment, so a classification never sees half of an update.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .cache import DecisionCache, EvictionPolicy
from .patterns import EMPTY_PATTERNS, CompiledPatterns, PatternCompiler
from .urls import extract_hostname, extract_path, hostname_variants, is_third_party

logger = logging.getLogger(__name__)


class Category(Enum):
    """Why a request was blocked."""

    NETWORK = "network"
    YOUTUBE = "youtube"
    TRACKING = "tracking"
    NONE = "none"


class ResourceKind(Enum):
    """Kinds of requests seen by the interception hook."""

    MAIN_FRAME = "main_frame"
    SUB_FRAME = "sub_frame"
    SCRIPT = "script"
    IMAGE = "image"
    STYLESHEET = "stylesheet"
    FONT = "font"
    MEDIA = "media"
    XMLHTTPREQUEST = "xmlhttprequest"
    WEBSOCKET = "websocket"
    OTHER = "other"


@dataclass(frozen=True)
class ClassificationDecision:
    """Result of classifying one URL."""

    block: bool
    category: Category


ALLOW = ClassificationDecision(block=False, category=Category.NONE)
BLOCK_NETWORK = ClassificationDecision(block=True, category=Category.NETWORK)
BLOCK_YOUTUBE = ClassificationDecision(block=True, category=Category.YOUTUBE)
BLOCK_TRACKING = ClassificationDecision(block=True, category=Category.TRACKING)


# Hosts that serve the site's own video player and streams
VIDEO_HOSTS = ("googlevideo.com", "youtube.com", "youtube-nocookie.com", "ytimg.com")

# Query markers that only appear on ad playback requests
VIDEO_AD_MARKERS = re.compile(
    r"[?&](?:oad|adformat|ad_type)="
    r"|[?&]ad_[a-z_]+="
    r"|[?&]label=(?:adv|ad_)",
    re.IGNORECASE,
)

# Stream identifiers seen on ad creatives; heuristic, not verified upstream
VIDEO_AD_STREAM_IDS = re.compile(
    r"[?&]ctier=L(?:&|$)"
    r"|[?&]source=yt_ad(?:&|$)",
    re.IGNORECASE,
)

VIDEO_AD_PATH_PREFIXES = (
    "/pagead/",
    "/ptracking",
    "/api/stats/ads",
    "/api/stats/atr",
    "/get_midroll_",
    "/pcs/activeview",
    "/youtubei/v1/player/ad_break",
)

VIDEO_CONTENT_PATH_PREFIXES = (
    "/videoplayback",
    "/watch",
    "/embed/",
    "/shorts/",
    "/s/player/",
    "/vi/",
)

# Domains matched against the hostname
WHITELIST_DOMAINS = (
    "googlevideo.com",
    "ytimg.com",
    "ggpht.com",
    "gstatic.com",
    "googleapis.com",
    "accounts.google.com",
    "play.google.com",
    "cdnjs.cloudflare.com",
    "unpkg.com",
    "jsdelivr.net",
    "cloudflare.com",
    "akamaized.net",
    "fastly.net",
)

# First-party navigation endpoints matched against the full URL
WHITELIST_URL_PARTS = (
    "youtube.com/youtubei/v1/browse",
    "youtube.com/youtubei/v1/next",
    "youtube.com/youtubei/v1/search",
    "youtube.com/youtubei/v1/guide",
    "google.com/recaptcha/",
)

AD_DOMAINS = frozenset(
    {
        "googlesyndication.com",
        "googleadservices.com",
        "doubleclick.net",
        "adservice.google.com",
        "google-analytics.com",
        "googletagmanager.com",
        "facebook.net",
        "connect.facebook.net",
        "ads-twitter.com",
        "analytics.twitter.com",
        "adnxs.com",
        "adsrvr.org",
        "criteo.com",
        "criteo.net",
        "taboola.com",
        "outbrain.com",
        "amazon-adsystem.com",
        "pubmatic.com",
        "rubiconproject.com",
        "openx.net",
        "scorecardresearch.com",
        "quantserve.com",
        "demdex.net",
        "hotjar.com",
        "mixpanel.com",
        "segment.io",
    }
)

AD_PATTERN = re.compile(
    r"pagead|adserver|doubleclick|googlesyndication|adservice|ptracking"
    r"|/ads[/?]|adsbygoogle|/analytics\.js|/collect\?",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class _CompiledSources:
    """Everything the classifier reads from the filter list manager."""

    version: str
    patterns: CompiledPatterns
    domains: frozenset[str]


class UrlClassifier:
    """Decide whether a request URL is an ad or tracker."""

    def __init__(
        self,
        cache_capacity: int = 1000,
        eviction: EvictionPolicy = EvictionPolicy.CLEAR,
        compiler: PatternCompiler | None = None,
    ) -> None:
        self._cache: DecisionCache[ClassificationDecision] = DecisionCache(
            cache_capacity, eviction
        )
        self._compiler = compiler or PatternCompiler()
        self._sources = _CompiledSources(
            version="", patterns=EMPTY_PATTERNS, domains=frozenset()
        )
        self.reset_stats()

    @property
    def version(self) -> str:
        return self._sources.version

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def cache_capacity(self) -> int:
        return self._cache.capacity

    def update_sources(
        self, patterns: Iterable[str], domains: Iterable[str], version: str
    ) -> None:
        """Recompile dynamic patterns, swap them in and clear the cache."""
        compiled = self._compiler.compile(list(patterns))
        sources = _CompiledSources(
            version=version,
            patterns=compiled,
            domains=frozenset(d.lower() for d in domains),
        )
        self._sources = sources
        self._cache.clear()
        logger.info(
            "Classifier sources updated: version %s, %d patterns, %d domains",
            version,
            compiled.accepted,
            len(sources.domains),
        )

    def classify(
        self,
        url: str,
        referrer: str | None = None,
        resource_kind: ResourceKind | None = None,
    ) -> ClassificationDecision:
        """Classify a request URL.

        Args:
            url: The request URL.
            referrer: URL of the page making the request, if known.
            resource_kind: Kind of request, if known.

        Returns:
            The decision; never raises for string input.
        """
        self._requests_checked += 1

        if not isinstance(url, str):
            return ALLOW

        cached = self._cache.get(url)
        if cached is not None:
            self._cache_hits += 1
            return self._count(cached)

        decision = self._decide(url)
        self._cache.put(url, decision)

        if decision.block and logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Blocked (%s, %s, third-party=%s): %s",
                decision.category.value,
                resource_kind.value if resource_kind else "unknown",
                is_third_party(extract_hostname(url), extract_hostname(referrer or "")),
                url[:120],
            )
        return self._count(decision)

    def _decide(self, url: str) -> ClassificationDecision:
        sources = self._sources
        hostname = extract_hostname(url)

        if hostname and _host_matches(hostname, VIDEO_HOSTS):
            verdict = _check_video_host(url)
            if verdict is not None:
                return verdict

        if hostname and _host_matches(hostname, WHITELIST_DOMAINS):
            return ALLOW
        if any(part in url for part in WHITELIST_URL_PARTS):
            return ALLOW

        if hostname and any(ad in hostname for ad in AD_DOMAINS):
            return BLOCK_NETWORK

        if hostname and sources.domains:
            for variant in hostname_variants(hostname):
                if variant in sources.domains:
                    return BLOCK_NETWORK

        if AD_PATTERN.search(url):
            return BLOCK_TRACKING

        if sources.patterns.search(url):
            return BLOCK_NETWORK

        return ALLOW

    def _count(self, decision: ClassificationDecision) -> ClassificationDecision:
        if decision.block:
            self._requests_blocked += 1
            self._blocked_by_category[decision.category] += 1
        return decision

    def reset_stats(self) -> None:
        self._requests_checked = 0
        self._requests_blocked = 0
        self._cache_hits = 0
        self._blocked_by_category = {
            Category.NETWORK: 0,
            Category.YOUTUBE: 0,
            Category.TRACKING: 0,
        }

    def get_stats(self) -> dict[str, int | str]:
        """Get classification statistics."""
        sources = self._sources
        return {
            "requests_checked": self._requests_checked,
            "requests_blocked": self._requests_blocked,
            "network_blocked": self._blocked_by_category[Category.NETWORK],
            "tracking_blocked": self._blocked_by_category[Category.TRACKING],
            "youtube_blocked": self._blocked_by_category[Category.YOUTUBE],
            "cache_hits": self._cache_hits,
            "cache_size": len(self._cache),
            "pattern_count": sources.patterns.accepted,
            "domain_count": len(sources.domains),
            "version": sources.version,
        }


def _host_matches(hostname: str, domains: tuple[str, ...]) -> bool:
    return any(domain in hostname for domain in domains)


def _check_video_host(url: str) -> ClassificationDecision | None:
    """Verdict for URLs on a video host, or None to fall through."""
    if VIDEO_AD_MARKERS.search(url) or VIDEO_AD_STREAM_IDS.search(url):
        return BLOCK_YOUTUBE

    path = extract_path(url)
    if path.startswith(VIDEO_AD_PATH_PREFIXES):
        return BLOCK_YOUTUBE

    if path.startswith(VIDEO_CONTENT_PATH_PREFIXES):
        return ALLOW

    return None
