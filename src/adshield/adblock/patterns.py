"""
Compile untrusted remote URL patterns into a single alternation regex.

Patterns come from the remote JSON config and from EasyList. They are treated
as literals: every regex metacharacter is escaped. The only wildcard forms kept
are ``*`` (EasyList) and ``.*?`` / ``.*`` (the curated config), both compiled to
a lazy ``.*?``. Patterns that are empty, too short, too long or carry too many
wildcards are rejected before compilation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 256
MIN_LENGTH = 3
MAX_WILDCARDS = 3

_WILDCARD_RE = re.compile(r"\.\*\??|\*")


class PatternRejected(ValueError):
    """Raised when a pattern is unsafe or useless to compile."""


def pattern_to_regex(pattern: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Convert one filter pattern to an escaped regex fragment.

    Raises:
        PatternRejected: if the pattern is not acceptable.
    """
    if not isinstance(pattern, str):
        raise PatternRejected("pattern is not a string")

    pattern = pattern.strip()
    if len(pattern) > max_length:
        raise PatternRejected(f"pattern longer than {max_length} characters")

    pieces = _WILDCARD_RE.split(pattern)
    if len(pieces) - 1 > MAX_WILDCARDS:
        raise PatternRejected("too many wildcards")

    literal_length = sum(len(p) for p in pieces)
    if literal_length < MIN_LENGTH:
        raise PatternRejected("pattern too short")

    return ".*?".join(re.escape(p) for p in pieces)


@dataclass(frozen=True)
class CompiledPatterns:
    """An immutable compiled alternation over accepted patterns."""

    regex: re.Pattern[str] | None
    accepted: int
    rejected: int

    def search(self, url: str) -> bool:
        if self.regex is None:
            return False
        return self.regex.search(url) is not None

    def first_match(self, url: str) -> str | None:
        """Return the matched text, for debug logging."""
        if self.regex is None:
            return None
        m = self.regex.search(url)
        return m.group(0) if m else None


EMPTY_PATTERNS = CompiledPatterns(regex=None, accepted=0, rejected=0)


class PatternCompiler:
    """Vet and compile pattern lists into one case-insensitive regex."""

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH) -> None:
        self._max_length = max_length

    def compile(self, patterns: list[str] | tuple[str, ...]) -> CompiledPatterns:
        fragments: list[str] = []
        seen: set[str] = set()
        rejected = 0

        for pattern in patterns:
            try:
                fragment = pattern_to_regex(pattern, self._max_length)
            except PatternRejected as e:
                rejected += 1
                logger.debug("Rejected pattern %r: %s", pattern, e)
                continue
            if fragment in seen:
                continue
            seen.add(fragment)
            fragments.append(fragment)

        if not fragments:
            return CompiledPatterns(regex=None, accepted=0, rejected=rejected)

        try:
            regex = re.compile("|".join(fragments), re.IGNORECASE)
        except re.error as e:
            # Escaped fragments should always compile; keep the old behaviour
            # of matching nothing rather than failing the refresh.
            logger.warning("Failed to compile %d patterns: %s", len(fragments), e)
            return CompiledPatterns(regex=None, accepted=0, rejected=rejected + len(fragments))

        logger.debug("Compiled %d patterns (%d rejected)", len(fragments), rejected)
        return CompiledPatterns(regex=regex, accepted=len(fragments), rejected=rejected)
