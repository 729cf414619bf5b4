"""
Filter list management for adblock.

Downloads, validates, parses and caches the three filter sources:

- the curated JSON config (network patterns plus page selectors)
- a hosts-file domain blocklist
- an EasyList rule file

Each source is refreshed at most once per update interval unless forced. A
failed or timed-out fetch keeps whatever was loaded before.
"""

from __future__ import annotations

import asyncio
import http.client
import json
import logging
import ssl
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from adshield.config import AdshieldConfig

from .parser import (
    FilterConfig,
    FilterValidationError,
    parse_easylist,
    parse_filter_config,
    parse_hosts,
)

logger = logging.getLogger(__name__)

CONFIG_CACHE_FILENAME = "filters-cache.json"
HOSTS_CACHE_FILENAME = "hosts-cache.txt"
EASYLIST_CACHE_FILENAME = "easylist-cache.txt"

USER_AGENT = "adshield/0.1"

# Built-in filters used until a cached or remote config is available
DEFAULT_FILTERS = FilterConfig(
    version="1.0.0",
    last_updated=datetime.now(timezone.utc).isoformat(),
    network_patterns=(
        # YouTube ad-related patterns
        "/pagead/",
        "/ptracking/",
        "/api/stats/ads",
        "/api/stats/qoe?ads",
        "/get_video_info?.*?ad_",
        "googlevideo.com/videoplayback.*?oad=",
        "youtube.com/api/stats/atr",
        "youtube.com/pagead/",
        "youtube.com/ptracking",
        "youtube.com/get_midroll_",
        "doubleclick.net",
        "googleadservices.com",
        "googlesyndication.com",
        "youtube.com/error_204.*?ad",
        "s.youtube.com/api/stats/watchtime.*?ad",
        "www.youtube.com/pcs/activeview",
        # General tracking
        "google-analytics.com",
        "googletagmanager.com",
        "facebook.net",
        "scorecardresearch.com",
    ),
    dom_selectors=(
        # Video player ads
        ".ytp-ad-module",
        ".ytp-ad-overlay-container",
        ".ytp-ad-text-overlay",
        ".ytp-ad-overlay-slot",
        ".ytp-ad-progress",
        ".ytp-ad-progress-list",
        ".ytp-ad-player-overlay",
        ".ytp-ad-player-overlay-layout",
        ".ytp-ad-action-interstitial",
        ".ytp-ad-action-interstitial-background",
        ".ytp-ad-image-overlay",
        # Page ads
        "#player-ads",
        "#masthead-ad",
        "ytd-ad-slot-renderer",
        "ytd-banner-promo-renderer",
        "ytd-statement-banner-renderer",
        "ytd-in-feed-ad-layout-renderer",
        "ytd-display-ad-renderer",
        "ytd-promoted-sparkles-web-renderer",
        "ytd-promoted-video-renderer",
        "ytd-compact-promoted-video-renderer",
        "ytd-video-masthead-ad-v3-renderer",
        "ytd-primetime-promo-renderer",
        ".ytd-mealbar-promo-renderer",
        ".ytd-carousel-ad-renderer",
        # Shorts ads
        "ytd-reel-player-overlay-renderer[is-ad]",
        # Feed ads
        "ytd-rich-item-renderer:has(ytd-ad-slot-renderer)",
        # Membership promos
        'ytd-engagement-panel-section-list-renderer[target-id="engagement-panel-ads"]',
        # Survey popups
        ".ytd-popup-container:has(ytd-survey-renderer)",
        # Premium popups
        "ytd-mealbar-promo-renderer",
        "yt-mealbar-promo-renderer",
        'tp-yt-paper-dialog:has([dialog-title*="Premium"])',
        'tp-yt-paper-dialog:has([dialog-title*="YouTube TV"])',
    ),
    video_ad_indicators=(
        ".ad-showing",
        ".ad-interrupting",
        '[class*="ad-showing"]',
        ".ytp-ad-player-overlay-instream-info",
    ),
    skip_button_selectors=(
        ".ytp-ad-skip-button",
        ".ytp-ad-skip-button-modern",
        ".ytp-skip-ad-button",
        ".ytp-ad-skip-button-container button",
        "button.ytp-ad-skip-button",
        "button.ytp-ad-skip-button-modern",
        ".ytp-ad-skip-button-slot button",
        ".ytp-ad-skip-button-slot .ytp-ad-skip-button",
        '[class*="skip"] button',
        ".videoAdUiSkipButton",
        ".ytp-ad-preview-container + button",
    ),
    ad_container_selectors=(
        ".video-ads",
        ".ytp-ad-module",
        "#movie_player.ad-showing .video-ads",
        ".ytp-ad-player-overlay-layout",
    ),
)


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a forced update."""

    success: bool
    version: str


@dataclass(frozen=True)
class SuppressionPayload:
    """One-shot configuration delivered to each page."""

    version: str
    dom_selectors: tuple[str, ...]
    video_ad_indicators: tuple[str, ...]
    skip_button_selectors: tuple[str, ...]
    ad_container_selectors: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "domSelectors": list(self.dom_selectors),
            "videoAdIndicators": list(self.video_ad_indicators),
            "skipButtonSelectors": list(self.skip_button_selectors),
            "adContainerSelectors": list(self.ad_container_selectors),
        }


ChangeListener = Callable[["FilterListManager"], None]


class FilterListManager:
    """Manage the curated config, hosts snapshot and EasyList patterns."""

    def __init__(self, config: AdshieldConfig | None = None) -> None:
        self._config = config or AdshieldConfig()
        self._cache_dir = self._config.get_cache_dir()

        self._filters: FilterConfig = DEFAULT_FILTERS
        self._hosts_domains: frozenset[str] = frozenset()
        self._easylist_patterns: tuple[str, ...] = ()

        self._last_check = 0.0
        self._last_list_check = 0.0

        self._listeners: list[ChangeListener] = []
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._config_lock = asyncio.Lock()
        self._lists_lock = asyncio.Lock()
        self._background: list[asyncio.Task[bool]] = []
        self._scheduler: asyncio.Task[None] | None = None

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def version(self) -> str:
        return self._filters.version

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback run after any filter source changes."""
        self._listeners.append(listener)

    async def initialize(self) -> None:
        """Load cached sources and start background refreshes."""
        async with self._init_lock:
            if self._initialized:
                return

            try:
                self._cache_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning("Failed to create filter cache dir %s: %s", self._cache_dir, e)

            self._load_cached_filters()
            self._load_cached_lists()
            self._initialized = True
            self._notify()

            self._background = [
                asyncio.create_task(self.check_for_updates()),
                asyncio.create_task(self.check_for_list_updates()),
            ]
            logger.info("Filter manager initialized with filter version %s", self.version)

    async def check_for_updates(self, force: bool = False) -> bool:
        """Fetch the remote JSON config and apply it if its version is new.

        Returns:
            True if the config was replaced.
        """
        async with self._config_lock:
            now = time.time()
            if not force and now - self._last_check < self._config.update_interval:
                return False

            logger.debug("Checking for filter updates...")
            text = await self._fetch_text(
                self._config.filter_url, self._config.config_fetch_timeout
            )
            if text is None:
                return False

            try:
                remote = parse_filter_config(json.loads(text))
            except (json.JSONDecodeError, FilterValidationError) as e:
                logger.warning("Rejected remote filter config: %s", e)
                self._last_check = now
                return False

            self._last_check = now
            if remote.version == self._filters.version:
                logger.debug("Filters are up to date (v%s)", remote.version)
                return False

            logger.info("New filters found: v%s", remote.version)
            self._filters = remote
            self._save_cached_filters()

        self._notify()
        return True

    async def check_for_list_updates(self, force: bool = False) -> bool:
        """Fetch the hosts file and EasyList concurrently.

        Returns:
            True if either list was replaced.
        """
        async with self._lists_lock:
            now = time.time()
            if not force and now - self._last_list_check < self._config.update_interval:
                return False

            timeout = self._config.list_fetch_timeout
            hosts_text, easylist_text = await asyncio.gather(
                self._fetch_text(self._config.hosts_url, timeout),
                self._fetch_text(self._config.easylist_url, timeout),
            )

            changed = False
            if hosts_text is not None:
                changed |= self._apply_hosts(hosts_text)
            if easylist_text is not None:
                changed |= self._apply_easylist(easylist_text)

            if hosts_text is not None or easylist_text is not None:
                self._last_list_check = now

        if changed:
            self._notify()
        return changed

    async def force_update(self) -> UpdateResult:
        """Refresh every source now, ignoring the update interval."""
        updated_filters, updated_lists = await asyncio.gather(
            self.check_for_updates(force=True),
            self.check_for_list_updates(force=True),
        )
        return UpdateResult(success=updated_filters or updated_lists, version=self.version)

    def start_scheduler(self) -> None:
        """Start the periodic refresh task on the running loop."""
        if self._scheduler is None or self._scheduler.done():
            self._scheduler = asyncio.create_task(self._run_scheduler())

    async def _run_scheduler(self) -> None:
        while True:
            await asyncio.sleep(self._config.update_check_period)
            try:
                await self.check_for_updates()
                await self.check_for_list_updates()
            except Exception as e:
                logger.warning("Scheduled filter refresh failed: %s", e)

    async def close(self) -> None:
        """Cancel the scheduler and any background refresh."""
        tasks = [t for t in self._background if not t.done()]
        if self._scheduler is not None and not self._scheduler.done():
            tasks.append(self._scheduler)  # type: ignore[arg-type]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background = []
        self._scheduler = None

    def _apply_hosts(self, text: str) -> bool:
        parsed = parse_hosts(text, self._config.max_hosts_domains)
        if not parsed:
            logger.warning("Hosts list parsed to no domains, keeping previous snapshot")
            return False
        if parsed == self._hosts_domains:
            logger.debug("Hosts list unchanged (%d domains)", len(parsed))
            return False

        self._hosts_domains = parsed
        self._write_text(self._cache_dir / HOSTS_CACHE_FILENAME, text)
        logger.info("Hosts updated: %d domains", len(parsed))
        return True

    def _apply_easylist(self, text: str) -> bool:
        parsed = parse_easylist(text, self._config.max_easylist_patterns)
        if not parsed:
            logger.warning("EasyList parsed to no patterns, keeping previous set")
            return False
        if parsed == self._easylist_patterns:
            logger.debug("EasyList unchanged (%d patterns)", len(parsed))
            return False

        self._easylist_patterns = parsed
        self._write_text(self._cache_dir / EASYLIST_CACHE_FILENAME, text)
        logger.info("EasyList updated: %d patterns", len(parsed))
        return True

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning("Filter change listener failed: %s", e)

    def _load_cached_filters(self) -> None:
        """Load the cached JSON config, keeping defaults on any problem."""
        cache_path = self._cache_dir / CONFIG_CACHE_FILENAME
        if not cache_path.exists():
            return

        try:
            with open(cache_path, encoding="utf-8") as f:
                data = json.load(f)
            filters = parse_filter_config(data.get("filters"))
        except (OSError, json.JSONDecodeError, AttributeError, FilterValidationError) as e:
            logger.info("No valid filter cache found, using defaults: %s", e)
            return

        self._filters = filters
        last_check = data.get("lastCheck", 0)
        if isinstance(last_check, (int, float)):
            self._last_check = last_check / 1000
        logger.debug("Loaded cached filters v%s", filters.version)

    def _save_cached_filters(self) -> None:
        cache_path = self._cache_dir / CONFIG_CACHE_FILENAME
        data = {
            "filters": self._filters.to_dict(),
            "lastCheck": int(time.time() * 1000),
        }
        try:
            with open(cache_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            logger.debug("Filters cached: %s", cache_path)
        except OSError as e:
            logger.warning("Failed to cache filters: %s", e)

    def _load_cached_lists(self) -> None:
        hosts_text = self._read_text(self._cache_dir / HOSTS_CACHE_FILENAME)
        if hosts_text is not None:
            self._hosts_domains = parse_hosts(hosts_text, self._config.max_hosts_domains)
            logger.debug("Loaded cached hosts domains: %d", len(self._hosts_domains))

        easylist_text = self._read_text(self._cache_dir / EASYLIST_CACHE_FILENAME)
        if easylist_text is not None:
            self._easylist_patterns = parse_easylist(
                easylist_text, self._config.max_easylist_patterns
            )
            logger.debug("Loaded cached EasyList patterns: %d", len(self._easylist_patterns))

    def _read_text(self, path: Path) -> str | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read cached list %s: %s", path.name, e)
            return None

    def _write_text(self, path: Path, content: str) -> None:
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            logger.warning("Failed to cache list %s: %s", path.name, e)

    async def _fetch_text(self, url: str, timeout: float) -> str | None:
        """Fetch a URL as text, or None on error or timeout."""
        logger.debug("Fetching %s", url)

        def _do_fetch() -> str:
            ctx = ssl.create_default_context()
            req = urllib.request.Request(
                url,
                headers={"User-Agent": USER_AGENT, "Cache-Control": "no-cache"},
            )
            with urllib.request.urlopen(req, timeout=timeout, context=ctx) as response:
                data: bytes = response.read()
                return data.decode("utf-8")

        try:
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(loop.run_in_executor(None, _do_fetch), timeout)
        except asyncio.TimeoutError:
            logger.warning("Fetch of %s timed out after %ss", url, timeout)
            return None
        except (
            urllib.error.URLError,
            http.client.HTTPException,
            TimeoutError,
            UnicodeDecodeError,
            ValueError,
            OSError,
        ) as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return None

    def get_filters(self) -> FilterConfig:
        return self._filters

    def network_patterns(self) -> list[str]:
        """Curated patterns first, then EasyList-derived ones."""
        return [*self._filters.network_patterns, *self._easylist_patterns]

    def blocked_domains(self) -> list[str]:
        return list(self._hosts_domains)

    def dom_selectors(self) -> list[str]:
        return list(self._filters.dom_selectors)

    def video_ad_indicators(self) -> list[str]:
        return list(self._filters.video_ad_indicators)

    def skip_button_selectors(self) -> list[str]:
        return list(self._filters.skip_button_selectors)

    def ad_container_selectors(self) -> list[str]:
        return list(self._filters.ad_container_selectors)

    def page_payload(self) -> SuppressionPayload:
        filters = self._filters
        return SuppressionPayload(
            version=filters.version,
            dom_selectors=filters.dom_selectors,
            video_ad_indicators=filters.video_ad_indicators,
            skip_button_selectors=filters.skip_button_selectors,
            ad_container_selectors=filters.ad_container_selectors,
        )

    def get_stats(self) -> dict[str, Any]:
        filters = self._filters
        return {
            "version": filters.version,
            "last_updated": filters.last_updated,
            "pattern_count": (
                len(filters.network_patterns)
                + len(self._easylist_patterns)
                + len(filters.dom_selectors)
                + len(filters.video_ad_indicators)
                + len(filters.skip_button_selectors)
            ),
            "hosts_count": len(self._hosts_domains),
            "easylist_count": len(self._easylist_patterns),
        }
