from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit

from realitycheck.schemas import Evidence
from realitycheck.utils import normalize_text

log = logging.getLogger(__name__)

DEFAULT_MIN_QUALITY = 0.2
TRACKING_PARAMS = frozenset({"fbclid", "gclid", "ref", "ref_src", "mc_cid", "mc_eid"})
_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_url(url: str, strip_query: bool = True) -> str:
    """Scheme-less canonical form used for duplicate detection.

    Host is casefolded with ``www.`` and default ports removed, the fragment
    and trailing slash are dropped, and the query string is either removed
    entirely or reduced to its non-tracking parameters in sorted order.
    """
    url = (url or "").strip()
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url
    try:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower().removeprefix("www.")
        port = parts.port
    except ValueError:
        return ""
    if not host:
        return ""
    if port and port != _DEFAULT_PORTS.get(parts.scheme.lower()):
        host = f"{host}:{port}"
    path = parts.path.rstrip("/")
    canonical = host + path
    if not strip_query and parts.query:
        params = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k.lower() not in TRACKING_PARAMS and not k.lower().startswith("utm_")
        ]
        if params:
            canonical += "?" + urlencode(sorted(params))
    return canonical


def content_fingerprint(snippet: str) -> str:
    return hashlib.sha256(normalize_text(snippet).encode("utf-8")).hexdigest()


def _rank_key(item: Evidence):
    return (-item.quality, item.retrieved_at)


@dataclass
class NormalizeStats:
    received: int = 0
    duplicates: int = 0
    low_quality: int = 0
    capped: int = 0
    kept: int = 0


class EvidenceNormalizer:
    """Dedup, quality filter and volume cap for a raw evidence batch."""

    def __init__(self, min_quality: float = DEFAULT_MIN_QUALITY, strip_query: bool = True):
        self.min_quality = min_quality
        self.strip_query = strip_query

    def dedup_key(self, item: Evidence) -> str:
        url = canonical_url(item.url, self.strip_query)
        if url:
            return "url:" + url
        return "text:" + content_fingerprint(item.snippet)

    def normalize(self, evidence: list[Evidence], per_query_cap: int, max_total: int | None = None) -> list[Evidence]:
        return self.normalize_with_stats(evidence, per_query_cap, max_total)[0]

    def normalize_with_stats(
        self, evidence: list[Evidence], per_query_cap: int, max_total: int | None = None,
    ) -> tuple[list[Evidence], NormalizeStats]:
        stats = NormalizeStats(received=len(evidence))

        best: dict[str, Evidence] = {}
        for item in evidence:
            key = self.dedup_key(item)
            current = best.get(key)
            if current is None:
                best[key] = item
                continue
            stats.duplicates += 1
            if _rank_key(item) < _rank_key(current):
                best[key] = item

        survivors = [e for e in best.values() if e.quality >= self.min_quality]
        stats.low_quality = len(best) - len(survivors)

        by_query: dict[str, list[Evidence]] = defaultdict(list)
        for item in survivors:
            by_query[item.query].append(item)
        kept: list[Evidence] = []
        for items in by_query.values():
            items.sort(key=_rank_key)
            kept.extend(items[:per_query_cap])
        stats.capped = len(survivors) - len(kept)

        kept.sort(key=_rank_key)
        if max_total is not None and len(kept) > max_total:
            stats.capped += len(kept) - max_total
            kept = kept[:max_total]

        stats.kept = len(kept)
        log.debug(
            "Normalized evidence: %d in, %d duplicates, %d below quality, %d capped, %d kept",
            stats.received, stats.duplicates, stats.low_quality, stats.capped, stats.kept,
        )
        return kept, stats
