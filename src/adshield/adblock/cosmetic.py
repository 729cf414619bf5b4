"""
Cosmetic filtering: CSS that hides ad elements.

Builds the stylesheet injected once per page by the suppression controller.
"""

from __future__ import annotations

import logging
from typing import Iterable

logger = logging.getLogger(__name__)

HIDE_DECLARATIONS = (
    "display: none !important; "
    "visibility: hidden !important; "
    "opacity: 0 !important; "
    "pointer-events: none !important; "
    "height: 0 !important; "
    "min-height: 0 !important; "
    "max-height: 0 !important; "
    "overflow: hidden !important;"
)

# Player overlays and badges hidden regardless of the remote config
PLAYER_OVERLAY_SELECTORS = (
    ".ytp-ad-overlay-container",
    ".ytp-ad-text-overlay",
    ".ytp-ad-overlay-slot",
    ".video-ads",
    ".ytp-ad-preview-container",
    ".ytp-ad-preview-text",
    ".ytp-ad-simple-ad-badge",
    ".ytp-ad-duration-remaining",
    ".ytp-ad-skip-ad-slot",
    ".ytp-ad-feedback-dialog-renderer",
    "ytd-mealbar-promo-renderer",
    "yt-mealbar-promo-renderer",
    "tp-yt-paper-dialog.ytd-mealbar-promo-renderer",
    "ytd-rich-section-renderer:has(ytd-ad-slot-renderer)",
    "ytd-item-section-renderer:has(ytd-ad-slot-renderer)",
    'ytd-reel-video-renderer[is-ad="true"]',
)

# Keeps the video visible above hidden ad UI
PLAYER_LAYOUT_FIX = (
    ".html5-video-player.ad-showing .html5-video-container, "
    ".html5-video-player.ad-interrupting .html5-video-container "
    "{ z-index: 1 !important; }"
)


def is_safe_selector(selector: str) -> bool:
    """Reject selectors that could close the rule and inject CSS."""
    return bool(selector) and not any(c in selector for c in "{};<")


def build_hide_css(selectors: Iterable[str]) -> str:
    """Get CSS rules hiding every selector.

    One rule per selector, so a selector the browser does not support only
    drops its own rule.
    """
    rules: list[str] = []
    seen: set[str] = set()

    for selector in selectors:
        selector = selector.strip()
        if selector in seen:
            continue
        seen.add(selector)
        if not is_safe_selector(selector):
            logger.debug("Skipping unsafe selector: %r", selector)
            continue
        rules.append(f"{selector} {{ {HIDE_DECLARATIONS} }}")

    return "\n".join(rules)


def build_suppression_css(
    dom_selectors: Iterable[str], ad_container_selectors: Iterable[str]
) -> str:
    """Get the full per-page stylesheet."""
    selectors = [*dom_selectors, *ad_container_selectors, *PLAYER_OVERLAY_SELECTORS]
    css = build_hide_css(selectors)
    return f"{css}\n{PLAYER_LAYOUT_FIX}" if css else PLAYER_LAYOUT_FIX
