"""
Main adblock engine that wires network blocking, tracking parameter
stripping and in-page ad suppression into a Playwright page.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from adshield.config import AdshieldConfig

from .cache import EvictionPolicy
from .classifier import ALLOW, ClassificationDecision, ResourceKind, UrlClassifier
from .filter_lists import FilterListManager, UpdateResult
from .page import BINDING_NAME, PlaywrightSuppressionPage, build_observer_script, style_payload
from .patterns import PatternCompiler
from .suppression import AdSuppressionController, MutationRecord, SuppressionSettings
from .tracking import strip_tracking_params
from .urls import extract_hostname

if TYPE_CHECKING:
    from playwright.async_api import Frame, Page, Request, Route

logger = logging.getLogger(__name__)

# Map Playwright resource types to our ResourceKind enum
PLAYWRIGHT_TYPE_MAP = {
    "document": ResourceKind.MAIN_FRAME,
    "stylesheet": ResourceKind.STYLESHEET,
    "image": ResourceKind.IMAGE,
    "media": ResourceKind.MEDIA,
    "font": ResourceKind.FONT,
    "script": ResourceKind.SCRIPT,
    "texttrack": ResourceKind.OTHER,
    "xhr": ResourceKind.XMLHTTPREQUEST,
    "fetch": ResourceKind.XMLHTTPREQUEST,
    "eventsource": ResourceKind.OTHER,
    "websocket": ResourceKind.WEBSOCKET,
    "manifest": ResourceKind.OTHER,
    "other": ResourceKind.OTHER,
}

SUPPRESSION_STAT_KEYS = ("ads_skipped", "elements_removed", "accelerations")


def resource_kind_for(request: Request) -> ResourceKind:
    """Map a Playwright request to a ResourceKind."""
    kind = PLAYWRIGHT_TYPE_MAP.get(request.resource_type, ResourceKind.OTHER)
    if kind is ResourceKind.MAIN_FRAME:
        try:
            if request.frame.parent_frame is not None:
                return ResourceKind.SUB_FRAME
        except Exception:
            # Service worker requests have no frame
            return ResourceKind.OTHER
    return kind


class _PageSession:
    """Suppression state attached to one Playwright page."""

    def __init__(self, page: Page) -> None:
        self.page = page
        self.adapter = PlaywrightSuppressionPage(page)
        self.controller: AdSuppressionController | None = None
        self.lock = asyncio.Lock()
        self.closed = False


class AdblockEngine:
    """Main adblock engine: classifier, filter lists and page suppression."""

    def __init__(self, config: AdshieldConfig | None = None) -> None:
        """Initialize the adblock engine.

        Args:
            config: Engine configuration. If None, uses defaults.
        """
        self._config = config or AdshieldConfig()
        self._manager = FilterListManager(self._config)
        self._classifier = UrlClassifier(
            cache_capacity=self._config.cache_capacity,
            eviction=self._eviction_policy(),
            compiler=PatternCompiler(self._config.max_pattern_length),
        )
        self._manager.add_listener(self._on_filters_changed)
        self._settings = SuppressionSettings.from_config(self._config)
        self._tracker_blocking = self._config.tracker_blocking

        self._sessions: list[_PageSession] = []
        self._initialized = False
        self._init_lock = asyncio.Lock()

        # Statistics
        self._requests_redirected = 0
        self._finished_suppression = dict.fromkeys(SUPPRESSION_STAT_KEYS, 0)

    def _eviction_policy(self) -> EvictionPolicy:
        try:
            return EvictionPolicy(self._config.cache_eviction)
        except ValueError:
            logger.warning(
                "Unknown cache eviction policy %r, using %r",
                self._config.cache_eviction,
                EvictionPolicy.CLEAR.value,
            )
            return EvictionPolicy.CLEAR

    @property
    def manager(self) -> FilterListManager:
        return self._manager

    @property
    def classifier(self) -> UrlClassifier:
        return self._classifier

    async def initialize(self) -> None:
        """Load filter sources and start the refresh scheduler."""
        async with self._init_lock:
            if self._initialized:
                return

            logger.debug("Initializing adblock engine...")
            await self._manager.initialize()
            self._manager.start_scheduler()
            self._initialized = True
            logger.info(
                "Adblock engine initialized: filters v%s, %d patterns, %d hosts domains",
                self._manager.version,
                len(self._manager.network_patterns()),
                len(self._manager.blocked_domains()),
            )

    def _on_filters_changed(self, manager: FilterListManager) -> None:
        self._classifier.update_sources(
            manager.network_patterns(),
            manager.blocked_domains(),
            manager.version,
        )

    def classify(
        self,
        url: str,
        referrer: str | None = None,
        resource_kind: ResourceKind | None = None,
    ) -> ClassificationDecision:
        """Classify a request, honouring the blocking switches."""
        if not self._config.adblock_enabled or not self._tracker_blocking:
            return ALLOW
        return self._classifier.classify(url, referrer, resource_kind)

    def strip_navigation(self, url: str) -> str | None:
        """Cleaned URL for a main-frame navigation, or None to leave it."""
        if not self._config.strip_tracking_params:
            return None
        return strip_tracking_params(url)

    def set_tracker_blocking(self, enabled: bool) -> None:
        self._tracker_blocking = enabled
        logger.info("Tracker blocking %s", "enabled" if enabled else "disabled")

    def is_tracker_blocking_enabled(self) -> bool:
        return self._tracker_blocking

    async def force_update_filters(self) -> UpdateResult:
        return await self._manager.force_update()

    async def setup_page(self, page: Page) -> None:
        """Setup adblock filtering for a page.

        This installs the route handler for network blocking and navigation
        stripping, the page observer script, and the handlers that attach an
        ad suppression controller on main-frame navigation.

        Args:
            page: The Playwright page to setup.
        """
        await self.initialize()

        await page.route("**/*", self._handle_route)

        session = _PageSession(page)
        self._sessions.append(session)

        async def _binding(source: Any, kind: str, data: Any = None) -> Any:
            return await self._on_page_event(session, kind, data)

        try:
            await page.expose_binding(BINDING_NAME, _binding)
            await page.add_init_script(script=build_observer_script(self._manager.page_payload()))
        except Exception as e:
            logger.debug("Failed to install page observer: %s", e)

        page.on(
            "framenavigated",
            lambda frame: asyncio.create_task(self._on_frame_navigated(session, frame)),
        )
        page.on("close", lambda _: asyncio.create_task(self._close_session(session)))

        logger.debug("Adblock setup complete for page")

    async def _handle_route(self, route: Route) -> None:
        """Handle a route (network request).

        This is called for every network request and decides whether to
        block, redirect, or allow the request.
        """
        request = route.request
        url = request.url

        # Skip non-http(s) URLs
        if not url.startswith(("http://", "https://")):
            await route.continue_()
            return

        kind = resource_kind_for(request)

        if kind is ResourceKind.MAIN_FRAME and request.is_navigation_request():
            cleaned = self.strip_navigation(url)
            if cleaned is not None:
                self._requests_redirected += 1
                logger.debug("Stripped tracking parameters: %s -> %s", url[:80], cleaned[:80])
                try:
                    await route.fulfill(status=307, headers={"location": cleaned})
                    return
                except Exception as e:
                    logger.debug("Failed to redirect: %s", e)

        try:
            referrer = request.headers.get("referer")
        except Exception:
            referrer = None

        decision = self.classify(url, referrer, kind)

        if decision.block:
            try:
                await route.abort("blockedbyclient")
            except Exception as e:
                logger.debug("Failed to abort: %s", e)
            return

        # Allow the request
        try:
            await route.continue_()
        except Exception as e:
            # Route may already be handled
            logger.debug("Failed to continue route: %s", e)

    def _wants_suppression(self, url: str) -> bool:
        if not self._config.adblock_enabled:
            return False
        hostname = extract_hostname(url)
        return bool(hostname) and any(
            host in hostname for host in self._config.suppression_hosts
        )

    async def _on_frame_navigated(self, session: _PageSession, frame: Frame) -> None:
        """Attach a fresh controller to each main-frame page load."""
        # Only handle main frame
        if frame.parent_frame is not None:
            return

        # Navigations on one page attach one at a time
        async with session.lock:
            if session.closed:
                return
            try:
                url = frame.url
                await self._stop_controller(session)

                if not url or not self._wants_suppression(url):
                    return

                controller = AdSuppressionController(
                    session.adapter, self._manager.page_payload(), self._settings
                )
                session.controller = controller
                await controller.install()
                if session.controller is not controller:
                    await controller.stop()
                    return
                controller.start()
                logger.debug("Ad suppression attached to %s", extract_hostname(url))
            except Exception as e:
                logger.debug("Failed to attach ad suppression: %s", e)

    async def _on_page_event(self, session: _PageSession, kind: str, data: Any) -> Any:
        """Dispatch an event reported by the page observer script.

        The ``payload`` event answers with the current stylesheet so a page
        set up before a filter update can catch up.
        """
        if kind == "payload":
            return style_payload(self._manager.page_payload())

        controller = session.controller
        if controller is None:
            return

        try:
            if kind == "mutations" and isinstance(data, list):
                controller.on_mutations(
                    MutationRecord.from_dict(r) for r in data if isinstance(r, dict)
                )
            elif kind == "media" and isinstance(data, str):
                await controller.on_media_event(data)
            elif kind == "navigate":
                await controller.on_navigation()
        except Exception as e:
            logger.debug("Failed to handle page event %s: %s", kind, e)

    async def _stop_controller(self, session: _PageSession) -> None:
        controller = session.controller
        session.controller = None
        if controller is None:
            return
        await controller.stop()
        for key, value in controller.get_stats().items():
            self._finished_suppression[key] += value

    async def _close_session(self, session: _PageSession) -> None:
        session.closed = True
        await self._stop_controller(session)
        if session in self._sessions:
            self._sessions.remove(session)

    def get_stats(self) -> dict[str, Any]:
        """Get blocking statistics."""
        suppression = dict(self._finished_suppression)
        for session in self._sessions:
            if session.controller is not None:
                for key, value in session.controller.get_stats().items():
                    suppression[key] += value

        classifier = self._classifier.get_stats()
        filters = self._manager.get_stats()
        return {
            "requests_checked": classifier["requests_checked"],
            "requests_blocked": classifier["requests_blocked"],
            "requests_redirected": self._requests_redirected,
            "network_blocked": classifier["network_blocked"],
            "tracking_blocked": classifier["tracking_blocked"],
            "youtube_blocked": classifier["youtube_blocked"],
            "cache_hits": classifier["cache_hits"],
            "cache_size": classifier["cache_size"],
            "cache_capacity": self._classifier.cache_capacity,
            "pattern_count": classifier["pattern_count"],
            "domain_count": classifier["domain_count"],
            "filter_version": filters["version"],
            "last_updated": filters["last_updated"],
            "hosts_count": filters["hosts_count"],
            "easylist_count": filters["easylist_count"],
            "tracker_blocking": self._tracker_blocking,
            **suppression,
        }

    async def close(self) -> None:
        """Stop page controllers and filter refreshes."""
        for session in list(self._sessions):
            await self._close_session(session)
        await self._manager.close()
