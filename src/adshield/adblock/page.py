"""
Playwright bridge for the ad suppression controller.

``PlaywrightSuppressionPage`` runs each DOM operation as a small
``page.evaluate`` call. ``build_observer_script`` returns the init script
injected into every document: it applies the hide stylesheet as early as
possible and reports mutations, media events and single-page-app navigations
back through an exposed binding.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from .cosmetic import build_suppression_css
from .suppression import (
    PLAYER_SELECTOR,
    STYLE_ID,
    VIDEO_SELECTOR,
    MediaState,
    SuppressionPage,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .filter_lists import SuppressionPayload

logger = logging.getLogger(__name__)

BINDING_NAME = "__adshieldNotify"

# Cap on mutation summaries sent per observer callback
MAX_MUTATION_RECORDS = 50

_INJECT_STYLE_JS = """
([id, css, version]) => {
    let style = document.getElementById(id);
    if (style && style.dataset.version === version) return false;
    if (!style) {
        style = document.createElement('style');
        style.id = id;
        (document.head || document.documentElement).appendChild(style);
    }
    style.textContent = css;
    style.dataset.version = version;
    return true;
}
"""

_REMOVE_MATCHING_JS = """
(selectors) => {
    let removed = 0;
    for (const selector of selectors) {
        let matches;
        try {
            matches = document.querySelectorAll(selector);
        } catch (e) {
            continue;
        }
        for (const el of matches) {
            if (el.parentNode) {
                el.remove();
                removed++;
            }
        }
    }
    return removed;
}
"""

_EXISTS_JS = "(selector) => document.querySelector(selector) !== null"

_PLAYER_MATCHES_JS = """
([player, selector]) => {
    const el = document.querySelector(player);
    return el ? el.matches(selector) : false;
}
"""

_PLAYER_CLASS_JS = """
(player) => {
    const el = document.querySelector(player);
    return el && typeof el.className === 'string' ? el.className : '';
}
"""

_CLICK_VISIBLE_JS = """
(selector) => {
    for (const button of document.querySelectorAll(selector)) {
        if (button.offsetParent !== null && !button.disabled) {
            button.click();
            return true;
        }
    }
    return false;
}
"""

_MEDIA_STATE_JS = """
(video) => {
    const v = document.querySelector(video);
    if (!v) return null;
    return {
        duration: isFinite(v.duration) ? v.duration : null,
        currentTime: v.currentTime,
        playbackRate: v.playbackRate,
        muted: v.muted,
    };
}
"""

_SEEK_END_JS = """
(video) => {
    const v = document.querySelector(video);
    if (!v || !isFinite(v.duration) || v.duration <= 0) return false;
    v.currentTime = v.duration;
    return true;
}
"""

_SET_PLAYBACK_JS = """
([video, rate, muted]) => {
    const v = document.querySelector(video);
    if (!v) return;
    v.playbackRate = rate;
    v.muted = muted;
}
"""

_OBSERVER_TEMPLATE = """
(function() {
    'use strict';
    if (window.__adshieldObserver) return;
    window.__adshieldObserver = true;

    const CONFIG = %(config)s;
    const binding = %(binding)s;

    const notify = (kind, data) => {
        try {
            const fn = window[binding];
            if (fn) fn(kind, data);
        } catch (e) {}
    };

    const applyStyle = (css, version) => {
        let style = document.getElementById(CONFIG.styleId);
        if (style && style.dataset.version === version) return;
        if (!style) {
            style = document.createElement('style');
            style.id = CONFIG.styleId;
            (document.head || document.documentElement).appendChild(style);
        }
        style.textContent = css;
        style.dataset.version = version;
    };

    // The embedded payload is from when the page was set up; ask for the current one
    const refreshStyle = () => {
        try {
            const fn = window[binding];
            if (!fn) return;
            Promise.resolve(fn('payload')).then((p) => {
                if (p && p.version !== CONFIG.version) applyStyle(p.css, p.version);
            }, () => {});
        } catch (e) {}
    };

    const attachToVideo = (video) => {
        if (!video || video.__adshieldAttached) return;
        video.__adshieldAttached = true;
        for (const name of ['timeupdate', 'play', 'loadeddata']) {
            video.addEventListener(name, () => notify('media', name));
        }
    };

    const start = () => {
        applyStyle(CONFIG.css, CONFIG.version);
        refreshStyle();
        attachToVideo(document.querySelector(CONFIG.video));

        const observer = new MutationObserver((mutations) => {
            const records = [];
            for (const m of mutations) {
                const t = m.target;
                const isElement = !!t && t.nodeType === 1;
                records.push({
                    c: isElement && typeof t.className === 'string' ? t.className : '',
                    i: isElement ? (t.id || '') : '',
                    a: m.addedNodes.length,
                    e: isElement,
                });
                if (records.length >= CONFIG.maxRecords) break;
            }
            attachToVideo(document.querySelector(CONFIG.video));
            if (records.length) notify('mutations', records);
        });
        observer.observe(document.documentElement, {
            childList: true,
            subtree: true,
            attributes: true,
            attributeFilter: ['class', 'style', 'src'],
        });
    };

    const onNavigate = () => notify('navigate', location.href);
    window.addEventListener('yt-navigate-finish', onNavigate);
    window.addEventListener('popstate', onNavigate);

    if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', start);
    } else {
        start();
    }
})();
"""


def style_payload(payload: SuppressionPayload) -> dict[str, str]:
    """Get the stylesheet a page should carry for ``payload``."""
    return {
        "version": payload.version,
        "css": build_suppression_css(payload.dom_selectors, payload.ad_container_selectors),
    }


def build_observer_script(payload: SuppressionPayload) -> str:
    """Get the init script carrying the page's configuration at setup time."""
    config = {
        **style_payload(payload),
        "styleId": STYLE_ID,
        "video": VIDEO_SELECTOR,
        "maxRecords": MAX_MUTATION_RECORDS,
    }
    return _OBSERVER_TEMPLATE % {
        "config": json.dumps(config),
        "binding": json.dumps(BINDING_NAME),
    }


class PlaywrightSuppressionPage(SuppressionPage):
    """``SuppressionPage`` backed by a Playwright page."""

    def __init__(self, page: Page) -> None:
        self._page = page

    async def inject_style(self, style_id: str, css: str, version: str) -> bool:
        return bool(await self._page.evaluate(_INJECT_STYLE_JS, [style_id, css, version]))

    async def remove_matching(self, selectors: Sequence[str]) -> int:
        return int(await self._page.evaluate(_REMOVE_MATCHING_JS, list(selectors)) or 0)

    async def exists(self, selector: str) -> bool:
        return bool(await self._page.evaluate(_EXISTS_JS, selector))

    async def player_matches(self, selector: str) -> bool:
        return bool(await self._page.evaluate(_PLAYER_MATCHES_JS, [PLAYER_SELECTOR, selector]))

    async def player_class_name(self) -> str:
        return str(await self._page.evaluate(_PLAYER_CLASS_JS, PLAYER_SELECTOR) or "")

    async def click_first_visible(self, selector: str) -> bool:
        return bool(await self._page.evaluate(_CLICK_VISIBLE_JS, selector))

    async def media_state(self) -> MediaState | None:
        data: dict[str, Any] | None = await self._page.evaluate(_MEDIA_STATE_JS, VIDEO_SELECTOR)
        if not data:
            return None
        return MediaState(
            duration=data.get("duration"),
            current_time=float(data.get("currentTime") or 0.0),
            playback_rate=float(data.get("playbackRate") or 1.0),
            muted=bool(data.get("muted")),
        )

    async def seek_to_end(self) -> bool:
        return bool(await self._page.evaluate(_SEEK_END_JS, VIDEO_SELECTOR))

    async def set_playback(self, rate: float, muted: bool) -> None:
        await self._page.evaluate(_SET_PLAYBACK_JS, [VIDEO_SELECTOR, rate, muted])
