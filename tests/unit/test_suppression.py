"""Unit tests for in-page ad suppression."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from adshield.adblock.filter_lists import SuppressionPayload
from adshield.adblock.suppression import MediaState, SuppressionPage

PAYLOAD = SuppressionPayload(
    version="test",
    dom_selectors=("#masthead-ad", "ytd-ad-slot-renderer"),
    video_ad_indicators=(".ad-showing", "ytd-player-legacy-desktop-watch-ads-renderer"),
    skip_button_selectors=(".ytp-ad-skip-button", ".ytp-skip-ad-button"),
    ad_container_selectors=(".video-ads",),
)


class FakePage(SuppressionPage):
    """In-memory page with a single player and video element."""

    def __init__(self) -> None:
        self.ad_showing = False
        self.skip_visible = False
        self.seek_ok = True
        self.media: MediaState | None = MediaState(
            duration=15.0, current_time=0.0, playback_rate=1.0, muted=False
        )
        self.elements: dict[str, int] = {}
        self.styles: dict[str, str] = {}
        self.style_versions: dict[str, str] = {}
        self.clicks: list[str] = []
        self.seeks = 0
        self.playback_calls: list[tuple[float, bool]] = []

    async def inject_style(self, style_id: str, css: str, version: str) -> bool:
        if self.style_versions.get(style_id) == version:
            return False
        self.styles[style_id] = css
        self.style_versions[style_id] = version
        return True

    async def remove_matching(self, selectors: Sequence[str]) -> int:
        return sum(self.elements.pop(selector, 0) for selector in selectors)

    async def exists(self, selector: str) -> bool:
        return self.elements.get(selector, 0) > 0

    async def player_matches(self, selector: str) -> bool:
        return self.ad_showing and selector == ".ad-showing"

    async def player_class_name(self) -> str:
        return "html5-video-player ad-showing" if self.ad_showing else "html5-video-player"

    async def click_first_visible(self, selector: str) -> bool:
        if not self.skip_visible:
            return False
        self.clicks.append(selector)
        self.ad_showing = False
        self.skip_visible = False
        return True

    async def media_state(self) -> MediaState | None:
        return self.media

    async def seek_to_end(self) -> bool:
        self.seeks += 1
        return self.seek_ok

    async def set_playback(self, rate: float, muted: bool) -> None:
        self.playback_calls.append((rate, muted))
        if self.media is not None:
            self.media = MediaState(self.media.duration, self.media.current_time, rate, muted)


class BrokenPage(FakePage):
    """Page whose queries all fail, like a navigating document."""

    async def exists(self, selector: str) -> bool:
        raise RuntimeError("Execution context was destroyed")

    async def player_matches(self, selector: str) -> bool:
        raise RuntimeError("Execution context was destroyed")

    async def remove_matching(self, selectors: Sequence[str]) -> int:
        raise RuntimeError("Execution context was destroyed")


def _controller(page: FakePage, **settings: Any) -> Any:
    from adshield.adblock.suppression import AdSuppressionController, SuppressionSettings

    return AdSuppressionController(page, PAYLOAD, SuppressionSettings(**settings))


class TestMutationRelevance:
    """Tests for the mutation relevance predicate."""

    def test_added_nodes_relevant(self) -> None:
        """Test that any added nodes are relevant."""
        from adshield.adblock.suppression import MutationRecord, is_relevant_mutation

        assert is_relevant_mutation(MutationRecord(added_nodes=1))

    def test_ad_class_or_id_relevant(self) -> None:
        """Test that ad and promo markers are relevant."""
        from adshield.adblock.suppression import MutationRecord, is_relevant_mutation

        assert is_relevant_mutation(MutationRecord(target_class="html5-video-player ad-showing"))
        assert is_relevant_mutation(MutationRecord(target_id="Promo-Banner"))
        assert not is_relevant_mutation(MutationRecord(target_class="ytd-comments"))

    def test_non_element_ignored(self) -> None:
        """Test that attribute changes on non-elements are ignored."""
        from adshield.adblock.suppression import MutationRecord, is_relevant_mutation

        record = MutationRecord(target_class="ad", is_element=False)
        assert not is_relevant_mutation(record)

    def test_from_dict(self) -> None:
        """Test building a record from the observer summary."""
        from adshield.adblock.suppression import MutationRecord

        record = MutationRecord.from_dict({"c": "x", "i": "y", "a": 2, "e": False})
        assert record == MutationRecord("x", "y", 2, False)
        assert MutationRecord.from_dict({}) == MutationRecord()


class TestDebouncer:
    """Tests for the debounced callback helper."""

    @pytest.mark.asyncio
    async def test_bursts_collapse(self) -> None:
        """Test that a burst of triggers runs the callback once."""
        from adshield.adblock.suppression import Debouncer

        callback = AsyncMock()
        debouncer = Debouncer(0.01, callback)
        for _ in range(5):
            debouncer.trigger()
        assert debouncer.pending is True

        await asyncio.sleep(0.05)
        callback.assert_awaited_once()
        assert debouncer.pending is False

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        """Test that a cancelled trigger never fires."""
        from adshield.adblock.suppression import Debouncer

        callback = AsyncMock()
        debouncer = Debouncer(0.01, callback)
        debouncer.trigger()
        debouncer.cancel()

        await asyncio.sleep(0.03)
        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_callback_error_contained(self) -> None:
        """Test that a failing callback does not escape the task."""
        from adshield.adblock.suppression import Debouncer

        debouncer = Debouncer(0, AsyncMock(side_effect=RuntimeError("boom")))
        debouncer.trigger()
        await asyncio.sleep(0.01)
        assert debouncer.pending is False


class TestAdSuppressionController:
    """Tests for detection and remediation."""

    @pytest.mark.asyncio
    async def test_no_ad(self) -> None:
        """Test that content playback is left alone."""
        from adshield.adblock.suppression import AdPlaybackState

        page = FakePage()
        controller = _controller(page)

        assert await controller.check() is AdPlaybackState.CONTENT
        assert controller.detections == 0
        assert page.playback_calls == []

    @pytest.mark.asyncio
    async def test_skip_button_clicked(self) -> None:
        """Test that a visible skip control is clicked first."""
        from adshield.adblock.suppression import AdPlaybackState

        page = FakePage()
        page.ad_showing = True
        page.skip_visible = True
        controller = _controller(page)

        assert await controller.check() is AdPlaybackState.REMEDIATING
        assert page.clicks == [".ytp-ad-skip-button"]
        assert page.seeks == 0
        assert controller.get_stats()["ads_skipped"] == 1

        assert await controller.check() is AdPlaybackState.CONTENT

    @pytest.mark.asyncio
    async def test_single_detection_does_not_escalate(self) -> None:
        """Test that one detection never seeks or accelerates."""
        page = FakePage()
        page.ad_showing = True
        controller = _controller(page)

        await controller.check()
        assert controller.detections == 1
        assert page.seeks == 0
        assert page.playback_calls == []

    @pytest.mark.asyncio
    async def test_seek_on_second_detection(self) -> None:
        """Test jumping to the end from the second consecutive detection."""
        page = FakePage()
        page.ad_showing = True
        controller = _controller(page)

        await controller.check()
        await controller.check()

        assert page.seeks == 1
        assert controller.get_stats()["ads_skipped"] == 1

    @pytest.mark.asyncio
    async def test_no_seek_without_finite_duration(self) -> None:
        """Test that live or unloaded media is never seeked."""
        page = FakePage()
        page.ad_showing = True
        page.media = MediaState(duration=None, current_time=0.0, playback_rate=1.0, muted=False)
        controller = _controller(page)

        for _ in range(3):
            await controller.check()
        assert page.seeks == 0

    @pytest.mark.asyncio
    async def test_accelerate_and_restore(self) -> None:
        """Test 16x muted playback on the third detection and restore after."""
        from adshield.adblock.suppression import AdPlaybackState

        page = FakePage()
        page.ad_showing = True
        page.seek_ok = False
        controller = _controller(page)

        await controller.check()
        await controller.check()
        assert page.playback_calls == []

        await controller.check()
        assert page.playback_calls == [(16.0, True)]
        assert controller.get_stats()["accelerations"] == 1

        # Already fast and muted: nothing more to do
        await controller.check()
        assert page.playback_calls == [(16.0, True)]

        page.ad_showing = False
        assert await controller.check() is AdPlaybackState.CONTENT
        assert page.playback_calls[-1] == (1.0, False)
        assert controller.detections == 0

    @pytest.mark.asyncio
    async def test_seek_attempts_bounded(self) -> None:
        """Test that seeking stops after the configured attempts."""
        page = FakePage()
        page.ad_showing = True
        page.seek_ok = False
        controller = _controller(page, max_skip_attempts=2)

        for _ in range(6):
            await controller.check()
        assert page.seeks == 2

    @pytest.mark.asyncio
    async def test_detection_by_selector_and_overlay(self) -> None:
        """Test detection through page selectors and the info overlay."""
        from adshield.adblock.suppression import AD_INFO_OVERLAY

        page = FakePage()
        controller = _controller(page)

        page.elements["ytd-player-legacy-desktop-watch-ads-renderer"] = 1
        assert await controller.is_ad_playing() is True

        page.elements = {AD_INFO_OVERLAY: 1}
        assert await controller.is_ad_playing() is True

        page.elements = {}
        assert await controller.is_ad_playing() is False

    @pytest.mark.asyncio
    async def test_install_injects_once_and_sweeps(self) -> None:
        """Test that styles are injected once and ad elements removed."""
        from adshield.adblock.suppression import STYLE_ID

        page = FakePage()
        page.elements = {".video-ads": 2, "#masthead-ad": 1, ".unrelated": 4}
        controller = _controller(page)

        await controller.install()
        assert "#masthead-ad" in page.styles[STYLE_ID]
        assert controller.get_stats()["elements_removed"] == 3
        assert page.elements == {".unrelated": 4}

        assert await controller.inject_styles() is False

    @pytest.mark.asyncio
    async def test_newer_filters_replace_stylesheet(self) -> None:
        """Test that a controller with newer filters rewrites an older stylesheet."""
        from dataclasses import replace

        from adshield.adblock.suppression import STYLE_ID, AdSuppressionController

        page = FakePage()
        await _controller(page).inject_styles()
        assert ".new-promo" not in page.styles[STYLE_ID]

        newer = replace(PAYLOAD, version="test-2", dom_selectors=(*PAYLOAD.dom_selectors, ".new-promo"))
        controller = AdSuppressionController(page, newer)
        assert await controller.inject_styles() is True
        assert ".new-promo" in page.styles[STYLE_ID]
        assert page.style_versions[STYLE_ID] == "test-2"

    @pytest.mark.asyncio
    async def test_sweep_is_one_page_call(self) -> None:
        """Test that a sweep removes every selector in a single page call."""
        page = FakePage()
        page.elements = {".video-ads": 1, "ytd-ad-slot-renderer": 2}
        page.remove_matching = AsyncMock(wraps=page.remove_matching)  # type: ignore[method-assign]
        controller = _controller(page)

        assert await controller.sweep() == 3
        assert page.remove_matching.await_count == 1
        selectors = page.remove_matching.await_args[0][0]
        assert set(selectors) == {".video-ads", "#masthead-ad", "ytd-ad-slot-renderer"}

    @pytest.mark.asyncio
    async def test_page_errors_contained(self) -> None:
        """Test that failing DOM operations never raise."""
        from adshield.adblock.suppression import AdPlaybackState

        page = BrokenPage()
        controller = _controller(page)

        assert await controller.check() is AdPlaybackState.CONTENT
        assert await controller.sweep() == 0

    @pytest.mark.asyncio
    async def test_navigation_resets(self) -> None:
        """Test that navigation resets the state machine."""
        from adshield.adblock.suppression import AdPlaybackState

        page = FakePage()
        page.ad_showing = True
        controller = _controller(page)
        await controller.check()
        await controller.check()

        page.ad_showing = False
        await controller.on_navigation()
        assert controller.state is AdPlaybackState.CONTENT
        assert controller.detections == 0

    @pytest.mark.asyncio
    async def test_mutations_trigger_debounced_check(self) -> None:
        """Test that relevant mutations run a check after the quiet period."""
        from adshield.adblock.suppression import MutationRecord

        page = FakePage()
        controller = _controller(page, observer_debounce=0.01)

        assert controller.on_mutations([MutationRecord(target_class="ytd-comments")]) is False

        page.ad_showing = True
        page.skip_visible = True
        assert controller.on_mutations([MutationRecord(added_nodes=3)]) is True

        await asyncio.sleep(0.05)
        assert page.clicks == [".ytp-ad-skip-button"]

    @pytest.mark.asyncio
    async def test_media_events(self) -> None:
        """Test that only playback events trigger a check."""
        page = FakePage()
        page.ad_showing = True
        controller = _controller(page)

        await controller.on_media_event("pause")
        assert controller.detections == 0

        await controller.on_media_event("timeupdate")
        assert controller.detections == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        """Test the periodic check loop."""
        page = FakePage()
        page.ad_showing = True
        controller = _controller(page, check_interval=0.01)

        controller.start()
        assert controller.running is True
        await asyncio.sleep(0.05)
        await controller.stop()

        assert controller.running is False
        assert controller.detections >= 2


class TestCosmetic:
    """Tests for the hide stylesheet."""

    def test_build_hide_css(self) -> None:
        """Test one rule per selector, deduplicated and sanitised."""
        from adshield.adblock.cosmetic import build_hide_css

        css = build_hide_css([".ad", ".ad", "#x { color: red }", ".promo"])
        assert css.count(".ad {") == 1
        assert ".promo {" in css
        assert "color: red" not in css
        assert "display: none !important" in css

    def test_build_suppression_css(self) -> None:
        """Test that overlays and the layout fix are always present."""
        from adshield.adblock.cosmetic import (
            PLAYER_LAYOUT_FIX,
            PLAYER_OVERLAY_SELECTORS,
            build_suppression_css,
        )

        css = build_suppression_css([], [])
        assert css.startswith(PLAYER_OVERLAY_SELECTORS[0])
        assert css.endswith(PLAYER_LAYOUT_FIX)


class TestPlaywrightPage:
    """Tests for the Playwright bridge."""

    def test_observer_script(self) -> None:
        """Test that the init script carries the page configuration."""
        from adshield.adblock.page import BINDING_NAME, build_observer_script
        from adshield.adblock.suppression import STYLE_ID

        script = build_observer_script(PAYLOAD)
        assert f'"{BINDING_NAME}"' in script
        assert STYLE_ID in script
        assert "#masthead-ad" in script
        assert "MutationObserver" in script

    @pytest.mark.asyncio
    async def test_media_state(self) -> None:
        """Test converting the evaluated media snapshot."""
        from adshield.adblock.page import PlaywrightSuppressionPage

        page = MagicMock()
        page.evaluate = AsyncMock(
            return_value={"duration": 30.0, "currentTime": 2.5, "playbackRate": 1, "muted": False}
        )
        state = await PlaywrightSuppressionPage(page).media_state()
        assert state == MediaState(30.0, 2.5, 1.0, False)
        assert state.has_finite_duration is True

        page.evaluate = AsyncMock(return_value=None)
        assert await PlaywrightSuppressionPage(page).media_state() is None

    @pytest.mark.asyncio
    async def test_dom_operations(self) -> None:
        """Test that DOM operations pass selectors to evaluate."""
        from adshield.adblock.page import PlaywrightSuppressionPage
        from adshield.adblock.suppression import PLAYER_SELECTOR

        page = MagicMock()
        page.evaluate = AsyncMock(return_value=2)
        bridge = PlaywrightSuppressionPage(page)

        assert await bridge.remove_matching((".video-ads", "#masthead-ad")) == 2
        assert page.evaluate.call_args[0][1] == [".video-ads", "#masthead-ad"]
        assert page.evaluate.await_count == 1

        page.evaluate = AsyncMock(return_value=True)
        assert await bridge.inject_style("adshield-style", ".ad { display: none }", "v2") is True
        assert page.evaluate.call_args[0][1] == ["adshield-style", ".ad { display: none }", "v2"]

        page.evaluate = AsyncMock(return_value=True)
        assert await bridge.player_matches(".ad-showing") is True
        assert page.evaluate.call_args[0][1] == [PLAYER_SELECTOR, ".ad-showing"]
