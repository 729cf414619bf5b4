"""
In-page ad suppression: video ad remediation, DOM sweeps and styles.

The controller talks to the page only through ``SuppressionPage``, a small
async DOM surface. ``adshield.adblock.page`` implements it for Playwright; the
tests use an in-memory fake.

Per page the controller keeps an ``AdPlaybackState`` and a consecutive
detection counter. While an ad is showing, each check tries, in order:

1. click a visible, enabled skip control;
2. jump to the end of the media (from the second consecutive detection);
3. play at 16x muted (from the third consecutive detection).

A single flickering detection therefore never goes past step 1.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from .cosmetic import build_suppression_css

if TYPE_CHECKING:
    from adshield.config import AdshieldConfig

    from .filter_lists import SuppressionPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")

STYLE_ID = "adshield-adblock-styles"
PLAYER_SELECTOR = ".html5-video-player"
VIDEO_SELECTOR = "video"

# Player class fragments that mean an ad is on screen
AD_PLAYER_CLASSES = ("ad-showing", "ad-interrupting")
AD_INFO_OVERLAY = ".ytp-ad-player-overlay-instream-info"

# Substrings in a mutated element's class or id worth reacting to
AD_MUTATION_MARKERS = ("ad", "promo")

MEDIA_EVENTS = frozenset({"timeupdate", "play", "loadeddata"})


class AdPlaybackState(Enum):
    """Video ad state of one page."""

    CONTENT = "content"
    AD_DETECTED = "ad_detected"
    REMEDIATING = "remediating"


@dataclass(frozen=True)
class MediaState:
    """Snapshot of the page's main media element."""

    duration: float | None
    current_time: float
    playback_rate: float
    muted: bool

    @property
    def has_finite_duration(self) -> bool:
        return (
            self.duration is not None
            and math.isfinite(self.duration)
            and self.duration > 0
        )


@dataclass(frozen=True)
class MutationRecord:
    """Summary of one DOM mutation, as reported by the page observer."""

    target_class: str = ""
    target_id: str = ""
    added_nodes: int = 0
    is_element: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MutationRecord:
        return cls(
            target_class=str(data.get("c") or ""),
            target_id=str(data.get("i") or ""),
            added_nodes=int(data.get("a") or 0),
            is_element=bool(data.get("e", True)),
        )


def is_relevant_mutation(record: MutationRecord) -> bool:
    """Whether a mutation could have added or revealed an ad."""
    if record.added_nodes > 0:
        return True
    if not record.is_element:
        return False
    class_name = record.target_class.lower()
    element_id = record.target_id.lower()
    return any(m in class_name or m in element_id for m in AD_MUTATION_MARKERS)


class Debouncer:
    """Run an async callback once activity has been quiet for ``delay`` seconds."""

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self._delay = delay
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._fire())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _fire(self) -> None:
        await asyncio.sleep(self._delay)
        try:
            await self._callback()
        except Exception as e:
            logger.debug("Debounced callback failed: %s", e)


class SuppressionPage(ABC):
    """The DOM operations the controller needs from a page."""

    @abstractmethod
    async def inject_style(self, style_id: str, css: str, version: str) -> bool:
        """Add or replace the stylesheet unless it already holds ``version``; True if written."""

    @abstractmethod
    async def remove_matching(self, selectors: Sequence[str]) -> int:
        """Remove every element matching any of ``selectors``; return how many.

        An invalid selector is skipped without affecting the others.
        """

    @abstractmethod
    async def exists(self, selector: str) -> bool:
        """Whether any element matches ``selector``."""

    @abstractmethod
    async def player_matches(self, selector: str) -> bool:
        """Whether the video player container itself matches ``selector``."""

    @abstractmethod
    async def player_class_name(self) -> str:
        """The player container's class attribute, ``""`` if absent."""

    @abstractmethod
    async def click_first_visible(self, selector: str) -> bool:
        """Click the first visible, enabled match; True if clicked."""

    @abstractmethod
    async def media_state(self) -> MediaState | None:
        """State of the main media element, None if there is none."""

    @abstractmethod
    async def seek_to_end(self) -> bool:
        """Jump the media element to its end; True if done."""

    @abstractmethod
    async def set_playback(self, rate: float, muted: bool) -> None:
        """Set playback rate and mute state of the media element."""


@dataclass
class SuppressionSettings:
    """Timing and escalation knobs for one controller."""

    check_interval: float = 0.1
    observer_debounce: float = 0.05
    max_skip_attempts: int = 10
    seek_after_detections: int = 2
    accelerate_after_detections: int = 3
    fast_forward_rate: float = 16.0

    @classmethod
    def from_config(cls, config: AdshieldConfig) -> SuppressionSettings:
        return cls(
            check_interval=config.check_interval,
            observer_debounce=config.observer_debounce,
            max_skip_attempts=config.max_skip_attempts,
        )


class AdSuppressionController:
    """Detect and remediate ads inside one page."""

    def __init__(
        self,
        page: SuppressionPage,
        payload: SuppressionPayload,
        settings: SuppressionSettings | None = None,
    ) -> None:
        self._page = page
        self._payload = payload
        self._settings = settings or SuppressionSettings()
        self._css = build_suppression_css(payload.dom_selectors, payload.ad_container_selectors)
        self._sweep_selectors = list(
            dict.fromkeys([*payload.ad_container_selectors, *payload.dom_selectors])
        )

        self._state = AdPlaybackState.CONTENT
        self._detections = 0
        self._seek_attempts = 0
        self._accelerated = False

        self._check_lock = asyncio.Lock()
        self._debouncer = Debouncer(self._settings.observer_debounce, self._on_quiet)
        self._poll_task: asyncio.Task[None] | None = None

        # Statistics
        self._ads_skipped = 0
        self._elements_removed = 0
        self._accelerations = 0

    @property
    def state(self) -> AdPlaybackState:
        return self._state

    @property
    def detections(self) -> int:
        return self._detections

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def _guard(self, op: Awaitable[T], default: T, what: str) -> T:
        """Await a DOM operation; any failure yields ``default``."""
        try:
            return await op
        except Exception as e:
            logger.debug("DOM operation %s failed: %s", what, e)
            return default

    async def install(self) -> None:
        """Inject styles, sweep existing ads and run a first check."""
        await self.inject_styles()
        await self.sweep()
        await self.check()

    async def inject_styles(self) -> bool:
        return await self._guard(
            self._page.inject_style(STYLE_ID, self._css, self._payload.version),
            False,
            "inject_style",
        )

    async def sweep(self) -> int:
        """Remove elements matching ad container and page ad selectors."""
        if not self._sweep_selectors:
            return 0
        removed = await self._guard(
            self._page.remove_matching(self._sweep_selectors), 0, "remove_matching"
        )
        if removed:
            self._elements_removed += removed
            logger.debug("Removed %d ad elements", removed)
        return removed

    async def is_ad_playing(self) -> bool:
        for indicator in self._payload.video_ad_indicators:
            if indicator.startswith((".", "[")):
                matched = await self._guard(
                    self._page.player_matches(indicator), False, f"match {indicator}"
                )
            else:
                matched = await self._guard(
                    self._page.exists(indicator), False, f"query {indicator}"
                )
            if matched:
                return True

        class_name = await self._guard(self._page.player_class_name(), "", "player class")
        if any(c in class_name for c in AD_PLAYER_CLASSES):
            return True

        return await self._guard(self._page.exists(AD_INFO_OVERLAY), False, "ad overlay")

    async def check(self) -> AdPlaybackState:
        """Run one detection pass and advance the state machine."""
        async with self._check_lock:
            if not await self.is_ad_playing():
                await self._enter_content()
                return self._state

            self._detections += 1
            self._transition(AdPlaybackState.AD_DETECTED)
            self._transition(AdPlaybackState.REMEDIATING)
            await self._remediate()
            return self._state

    def _transition(self, state: AdPlaybackState) -> None:
        if state is not self._state:
            logger.debug(
                "Ad state %s -> %s (detections=%d)",
                self._state.value,
                state.value,
                self._detections,
            )
            self._state = state

    async def _enter_content(self) -> None:
        self._transition(AdPlaybackState.CONTENT)
        self._detections = 0
        self._seek_attempts = 0

        if self._accelerated:
            await self._guard(self._page.set_playback(1.0, False), None, "restore playback")
            self._accelerated = False

    async def _remediate(self) -> None:
        settings = self._settings

        if await self._click_skip():
            self._ads_skipped += 1
            self._seek_attempts = 0
            return

        if (
            self._detections >= settings.seek_after_detections
            and self._seek_attempts < settings.max_skip_attempts
        ):
            self._seek_attempts += 1
            if await self._seek_to_end():
                self._ads_skipped += 1
                self._seek_attempts = 0
                return

        if self._detections >= settings.accelerate_after_detections:
            await self._accelerate()

    async def _click_skip(self) -> bool:
        for selector in self._payload.skip_button_selectors:
            clicked = await self._guard(
                self._page.click_first_visible(selector), False, f"click {selector}"
            )
            if clicked:
                logger.debug("Clicked skip button: %s", selector)
                return True
        return False

    async def _seek_to_end(self) -> bool:
        media = await self._guard(self._page.media_state(), None, "media state")
        if media is None or not media.has_finite_duration:
            return False
        done = await self._guard(self._page.seek_to_end(), False, "seek")
        if done:
            logger.debug("Skipped ad by seeking to its end")
        return done

    async def _accelerate(self) -> None:
        media = await self._guard(self._page.media_state(), None, "media state")
        if media is None:
            return
        rate = self._settings.fast_forward_rate
        if media.playback_rate < rate or not media.muted:
            await self._guard(self._page.set_playback(rate, True), None, "accelerate")
            if not self._accelerated:
                self._accelerations += 1
                logger.debug("Ad sped up to %sx", rate)
            self._accelerated = True

    def on_mutations(self, records: Iterable[MutationRecord]) -> bool:
        """Feed observed mutations; schedules a debounced check if relevant."""
        if any(is_relevant_mutation(r) for r in records):
            self._debouncer.trigger()
            return True
        return False

    async def _on_quiet(self) -> None:
        await self.check()
        await self.sweep()

    async def on_media_event(self, event: str) -> None:
        if event in MEDIA_EVENTS:
            await self.check()

    async def on_navigation(self) -> None:
        """Reset the state machine and re-arm styles and sweeps."""
        async with self._check_lock:
            await self._enter_content()
        await self.inject_styles()
        await self.sweep()

    def start(self) -> None:
        """Start the periodic check on the running loop."""
        if not self.running:
            self._poll_task = asyncio.create_task(self.run())

    async def run(self) -> None:
        while True:
            try:
                await self.check()
                await self.sweep()
            except Exception as e:
                logger.debug("Suppression pass failed: %s", e)
            await asyncio.sleep(self._settings.check_interval)

    async def stop(self) -> None:
        self._debouncer.cancel()
        task = self._poll_task
        self._poll_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def get_stats(self) -> dict[str, int]:
        return {
            "ads_skipped": self._ads_skipped,
            "elements_removed": self._elements_removed,
            "accelerations": self._accelerations,
        }
