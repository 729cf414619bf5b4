"""
Tracking parameter stripping for top-level navigations.

Only main-frame navigations should be rewritten; sub-resource requests such as
API calls may legitimately need parameters with these names.
"""

from __future__ import annotations

from urllib.parse import unquote_plus

# Click IDs, campaign IDs and analytics IDs
TRACKING_PARAMS = frozenset(
    {
        "gclid",
        "gclsrc",
        "dclid",
        "gbraid",
        "wbraid",
        "fbclid",
        "msclkid",
        "yclid",
        "ysclid",
        "twclid",
        "ttclid",
        "li_fat_id",
        "mc_cid",
        "mc_eid",
        "igshid",
        "_ga",
        "_gl",
        "_hsenc",
        "_hsmi",
        "mkt_tok",
        "oly_anon_id",
        "oly_enc_id",
        "vero_id",
        "wickedid",
        "s_cid",
    }
)

# Any parameter starting with one of these is removed
TRACKING_PREFIXES = ("utm_",)


def is_tracking_param(name: str) -> bool:
    name = unquote_plus(name).lower()
    return name in TRACKING_PARAMS or name.startswith(TRACKING_PREFIXES)


def strip_tracking_params(url: str) -> str | None:
    """Remove known tracking parameters from a URL's query string.

    The remaining parameters keep their order and raw encoding; path and
    fragment are untouched.

    Returns:
        The cleaned URL, or None if nothing was removed.
    """
    if not isinstance(url, str):
        return None

    fragment = ""
    hash_idx = url.find("#")
    if hash_idx != -1:
        url, fragment = url[:hash_idx], url[hash_idx:]

    q_idx = url.find("?")
    if q_idx == -1:
        return None

    base, query = url[:q_idx], url[q_idx + 1 :]
    kept: list[str] = []
    removed = False

    for segment in query.split("&"):
        name = segment.split("=", 1)[0]
        if name and is_tracking_param(name):
            removed = True
            continue
        kept.append(segment)

    if not removed:
        return None

    kept = [segment for segment in kept if segment]
    if kept:
        return f"{base}?{'&'.join(kept)}{fragment}"
    return f"{base}{fragment}"
