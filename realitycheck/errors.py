"""Exception taxonomy shared by the analysis engine and its outer surfaces."""
from __future__ import annotations

from typing import Iterable


class RealityCheckError(Exception):
    """Base class for all RealityCheck errors."""


class ConfigError(RealityCheckError):
    """Required configuration is missing or unusable."""


class ValidationError(RealityCheckError, ValueError):
    """Malformed analysis request. Fatal, never retried."""


class RateLimitTimeout(RealityCheckError):
    """Waiting for rate-limiter tokens would outlive the caller's deadline."""

    def __init__(self, wait: float, remaining: float):
        super().__init__(f"rate limit wait {wait:.3f}s exceeds remaining budget {remaining:.3f}s")
        self.wait = wait
        self.remaining = remaining


class UpstreamError(RealityCheckError):
    """The external research provider failed."""


class UpstreamTimeout(UpstreamError):
    """The external research provider did not answer in time."""


class LLMCallError(RealityCheckError):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class AnalysisFailed(RealityCheckError):
    """Terminal failure: no dimension succeeded, or planning/gathering broke."""


class PartialAnalysisFailure(RealityCheckError):
    """Some analyzer dimensions failed. Non-fatal; the rest are still scored."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"dimensions did not complete: {', '.join(self.missing)}")


class NotFound(RealityCheckError, KeyError):
    """Unknown analysis identifier."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class LifecycleError(RealityCheckError):
    """Illegal analysis status transition."""
