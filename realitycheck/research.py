from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Protocol
from urllib.parse import urlsplit

from duckduckgo_search import DDGS
from duckduckgo_search.exceptions import DuckDuckGoSearchException, RatelimitException, TimeoutException

from realitycheck.errors import UpstreamError, UpstreamTimeout
from realitycheck.schemas import Evidence, EvidenceType
from realitycheck.utils import Deadline

log = logging.getLogger(__name__)


class ResearchProvider(Protocol):
    """External research API boundary."""

    async def query(self, text: str, deadline: Deadline) -> list[Evidence]:
        ...


# ---------------------------------------------------------------------------
# Source classification
# ---------------------------------------------------------------------------

# Map evidence types to host fragments; first match wins, checked in order.
_TYPE_PATTERNS: list[tuple[EvidenceType, tuple[str, ...]]] = [
    (EvidenceType.REGULATORY, (
        ".gov", "sec.gov", "europa.eu", "ftc.gov", "fda.gov", "gov.uk", "oecd.org", "who.int",
    )),
    (EvidenceType.ACADEMIC, (
        ".edu", "arxiv.org", "scholar.google", "researchgate.net", "semanticscholar.org",
        "nature.com", "sciencedirect.com", "springer.com", "ncbi.nlm.nih.gov", "ssrn.com",
    )),
    (EvidenceType.DATABASE, (
        "crunchbase.com", "pitchbook.com", "cbinsights.com", "statista.com", "producthunt.com",
        "dealroom.co", "tracxn.com", "similarweb.com", "github.com",
    )),
    (EvidenceType.PROFESSIONAL, (
        "linkedin.com", "glassdoor.com", "g2.com", "capterra.com", "gartner.com",
        "mckinsey.com", "forrester.com", "hbr.org",
    )),
    (EvidenceType.FORUM, (
        "reddit.com", "news.ycombinator.com", "quora.com", "stackexchange.com",
        "stackoverflow.com", "indiehackers.com", "discord.", "forum",
    )),
    (EvidenceType.NEWS, (
        "techcrunch.com", "reuters.com", "bloomberg.com", "wsj.com", "nytimes.com", "ft.com",
        "theverge.com", "wired.com", "forbes.com", "businessinsider.com", "cnbc.com",
        "venturebeat.com", "theinformation.com", "axios.com", "bbc.", "news",
    )),
]

# Prior quality per evidence type before snippet and rank adjustments.
TYPE_QUALITY: dict[EvidenceType, float] = {
    EvidenceType.REGULATORY: 0.85,
    EvidenceType.ACADEMIC: 0.8,
    EvidenceType.DATABASE: 0.75,
    EvidenceType.NEWS: 0.7,
    EvidenceType.PROFESSIONAL: 0.6,
    EvidenceType.FORUM: 0.45,
    EvidenceType.OTHER: 0.4,
}


def source_host(url: str) -> str:
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    return host.removeprefix("www.")


def classify_source(url: str) -> EvidenceType:
    host = source_host(url)
    if not host:
        return EvidenceType.OTHER
    for evidence_type, patterns in _TYPE_PATTERNS:
        if any(p in host for p in patterns):
            return evidence_type
    return EvidenceType.OTHER


def estimate_quality(evidence_type: EvidenceType, snippet: str, rank: int = 0) -> float:
    """Type prior, up to +0.15 for a substantive snippet, -0.02 per rank position."""
    richness = min(len(snippet.strip()), 400) / 400 * 0.15
    score = TYPE_QUALITY[evidence_type] + richness - 0.02 * rank
    return round(max(0.0, min(1.0, score)), 4)


def to_evidence(result: dict, query: str, rank: int = 0, retrieved_at: datetime | None = None) -> Evidence | None:
    """Map one raw search hit (``title``/``href``/``body``) to Evidence."""
    url = str(result.get("href") or result.get("url") or "").strip()
    snippet = str(result.get("body") or result.get("snippet") or "").strip()
    if not url and not snippet:
        return None
    evidence_type = classify_source(url)
    return Evidence(
        source=source_host(url) or "unknown",
        type=evidence_type,
        url=url,
        title=str(result.get("title") or "").strip(),
        snippet=snippet,
        quality=estimate_quality(evidence_type, snippet, rank),
        retrieved_at=retrieved_at or datetime.now(UTC),
        query=query,
    )


# ---------------------------------------------------------------------------
# DuckDuckGo provider
# ---------------------------------------------------------------------------


class DuckDuckGoProvider:
    """Web search through DuckDuckGo.

    ``DDGS`` is synchronous, so each query runs in a worker thread. When the
    deadline elapses the caller stops waiting; the thread finishes on its own.
    """

    def __init__(self, max_results: int = 10, region: str = "wt-wt", timeout: float = 15.0):
        self.max_results = max_results
        self.region = region
        self.timeout = timeout

    def _search(self, text: str) -> list[dict]:
        return DDGS(timeout=int(self.timeout)).text(text, region=self.region, max_results=self.max_results) or []

    async def query(self, text: str, deadline: Deadline) -> list[Evidence]:
        budget = deadline.bounded(self.timeout)
        if budget is not None and budget <= 0:
            raise UpstreamTimeout(f"no time left for query {text!r}")
        try:
            raw = await asyncio.wait_for(asyncio.to_thread(self._search, text), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout(f"search timed out for {text!r}") from exc
        except TimeoutException as exc:
            raise UpstreamTimeout(f"search timed out for {text!r}: {exc}") from exc
        except RatelimitException as exc:
            raise UpstreamError(f"search rate limited for {text!r}") from exc
        except DuckDuckGoSearchException as exc:
            raise UpstreamError(f"search failed for {text!r}: {exc}") from exc

        now = datetime.now(UTC)
        evidence = [e for rank, r in enumerate(raw) if (e := to_evidence(r, text, rank, now)) is not None]
        log.debug("Search %r returned %d results", text, len(evidence))
        return evidence
