"""Shared utility functions used across RealityCheck modules."""
from __future__ import annotations

import hashlib
import json
import re
import time
from typing import Any

_MISSING = object()
_WS_RE = re.compile(r"\s+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def normalize_text(value: str | None) -> str:
    """Casefold and collapse whitespace."""
    return _WS_RE.sub(" ", (value or "").casefold()).strip()


def fingerprint(*parts: str | None) -> str:
    """Deterministic sha256 key over the normalized parts."""
    joined = "\x1f".join(normalize_text(p) for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class Deadline:
    """A monotonic wall-clock budget shared by every step of one analysis.

    ``Deadline(None)`` never expires.
    """

    def __init__(self, seconds: float | None, clock=time.monotonic):
        self._clock = clock
        self.budget = seconds
        self.expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def never(cls) -> Deadline:
        return cls(None)

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def bounded(self, limit: float | None) -> float | None:
        """Smaller of *limit* and the remaining budget (``None`` = unbounded)."""
        remaining = self.remaining()
        if limit is None:
            return remaining
        if remaining is None:
            return limit
        return min(limit, remaining)

    def __repr__(self) -> str:
        remaining = self.remaining()
        return "Deadline(never)" if remaining is None else f"Deadline(remaining={remaining:.3f}s)"
