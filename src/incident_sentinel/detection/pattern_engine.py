"""Compiled-pattern cache shared by the scanner and the honeypot registry.

All signatures are matched case-insensitively.  Patterns are compiled once
and cached at module level, so many scanners sharing a signature library
pay the compilation cost a single time.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any

from incident_sentinel.core.errors import InvalidSignature

# ---------------------------------------------------------------------------
# Compiled pattern cache (module-level)
# ---------------------------------------------------------------------------

@lru_cache(maxsize=512)
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile and cache a case-insensitive regex pattern.

    Raises
    ------
    re.error
        If the pattern is syntactically invalid.
    """
    return re.compile(pattern, re.IGNORECASE)


# ---------------------------------------------------------------------------
# PatternEngine
# ---------------------------------------------------------------------------

class PatternEngine:
    """Case-insensitive pattern matcher with compilation caching."""

    def compile(self, pattern: str) -> re.Pattern[str]:
        """Compile *pattern*, raising :class:`InvalidSignature` if it is invalid."""
        try:
            return _compile_pattern(pattern)
        except re.error as exc:
            raise InvalidSignature(
                f"Pattern does not compile: {exc.msg}",
                details={"pattern": pattern, "position": exc.pos},
            ) from exc

    def search(self, pattern: str, text: str) -> re.Match[str] | None:
        """Return the first match of *pattern* in *text*, or ``None``."""
        return self.compile(pattern).search(text)

    def match(self, pattern: str, text: str) -> bool:
        """Return ``True`` if *pattern* matches anywhere in *text*."""
        return self.search(pattern, text) is not None

    # -- cache management ---------------------------------------------------

    @staticmethod
    def clear_cache() -> None:
        """Clear the compiled pattern cache."""
        _compile_pattern.cache_clear()

    @staticmethod
    def cache_info() -> Any:
        """Return cache statistics."""
        return _compile_pattern.cache_info()
