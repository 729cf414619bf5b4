"""
Hostname helpers for the request hot path.

``extract_hostname`` deliberately avoids ``urllib.parse``: it scans for
``://`` and the end of the authority and slices. The classifier calls it for
every request, and a full parse costs several times more. Edge cases:

- no ``://`` (``example.com/path``, ``about:blank``): returns ``""``
- no path (``https://example.com``): the authority runs to the end
- ``?`` or ``#`` directly after the host ends the authority too
- userinfo (``user:pw@host``) and ports (``host:8080``) are stripped
- IPv6 literals keep their brackets (``[::1]``)
- the result is lowercased
"""

from __future__ import annotations

_AUTHORITY_END = "/?#"


def _authority_bounds(url: str) -> tuple[int, int] | None:
    if not isinstance(url, str):
        return None

    start = url.find("://")
    if start <= 0:
        return None
    start += 3

    end = len(url)
    for i in range(start, len(url)):
        if url[i] in _AUTHORITY_END:
            end = i
            break
    return start, end


def extract_hostname(url: str) -> str:
    """Return the lowercase hostname of ``url`` or ``""`` if there is none."""
    bounds = _authority_bounds(url)
    if bounds is None:
        return ""

    host = url[bounds[0] : bounds[1]]

    at = host.rfind("@")
    if at != -1:
        host = host[at + 1 :]

    if host.startswith("["):
        close = host.find("]")
        return host[: close + 1].lower() if close != -1 else ""

    colon = host.find(":")
    if colon != -1:
        host = host[:colon]

    return host.lower()


def hostname_variants(hostname: str) -> list[str]:
    """Get all suffixes of a hostname, most specific first.

    For 'sub.example.com', returns ['sub.example.com', 'example.com', 'com'].
    """
    parts = hostname.split(".")
    variants = []
    for i in range(len(parts)):
        variants.append(".".join(parts[i:]))
    return variants


def registrable_domain(hostname: str) -> str:
    """Simplified registrable domain: the last two labels."""
    parts = hostname.split(".")
    if len(parts) >= 2:
        return ".".join(parts[-2:])
    return hostname


def is_third_party(url_hostname: str, source_hostname: str | None) -> bool:
    """Check if a request goes to a different registrable domain than its source."""
    if not source_hostname or not url_hostname:
        return False
    return registrable_domain(url_hostname) != registrable_domain(source_hostname)


def extract_path(url: str) -> str:
    """Return the path of ``url`` without query or fragment, ``""`` if none."""
    bounds = _authority_bounds(url)
    if bounds is None:
        return ""

    start = bounds[1]
    if start >= len(url) or url[start] != "/":
        return ""

    end = len(url)
    for sep in "?#":
        i = url.find(sep, start)
        if i != -1 and i < end:
            end = i
    return url[start:end]
