from __future__ import annotations

import logging
import re

from realitycheck.schemas import DIMENSIONS, AnalysisRequest, Dimension
from realitycheck.utils import normalize_text

log = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")

# Query templates per dimension, most targeted first. Placeholders:
# {pitch} one-liner, {title} idea title, {category} optional category,
# {where} " in <location>" or "".
QUERY_TEMPLATES: dict[Dimension, tuple[str, ...]] = {
    Dimension.MARKET: (
        "{pitch} market size growth{where}",
        "{category} {pitch} funding investors",
        "{category} market trends demand{where}",
    ),
    Dimension.PROBLEM: (
        "{pitch} customer pain points",
        "{pitch} complaints forum discussion",
        "why is {pitch} hard today",
    ),
    Dimension.BARRIERS: (
        "{pitch} competitors alternatives",
        "{category} incumbents barriers to entry",
        "{title} vs alternatives comparison",
    ),
    Dimension.EXECUTION: (
        "{pitch} startup go-to-market pricing{where}",
        "{category} business model unit economics",
        "{pitch} hiring talent technical challenges",
    ),
    Dimension.RISKS: (
        "{pitch} regulation compliance{where}",
        "{category} {pitch} lawsuit liability risks",
        "{pitch} security privacy concerns",
    ),
    Dimension.GRAVEYARD: (
        "{pitch} startup shut down post-mortem",
        "{category} startups that failed why",
        "{title} failed acquired pivot",
    ),
}


class SearchPlanner:
    """Turns an idea into a bounded, deterministic list of research queries.

    Queries are taken round-robin across dimensions in canonical order, so
    with ``max_queries >= 6`` every dimension gets at least one.
    """

    def __init__(self, max_queries: int, templates: dict[Dimension, tuple[str, ...]] | None = None):
        if max_queries < 0:
            raise ValueError("max_queries must be >= 0")
        self.max_queries = max_queries
        self.templates = templates or QUERY_TEMPLATES

    def plan(self, request: AnalysisRequest) -> list[str]:
        return [q for q, _ in self.plan_by_dimension(request)]

    def plan_by_dimension(self, request: AnalysisRequest) -> list[tuple[str, Dimension]]:
        idea = request.idea
        location = request.location_bias
        fields = {
            "pitch": idea.one_liner,
            "title": idea.title,
            "category": idea.category or "",
            "where": f" in {location}" if location else "",
        }

        planned: list[tuple[str, Dimension]] = []
        seen: set[str] = set()
        depth = max((len(t) for t in self.templates.values()), default=0)
        for round_idx in range(depth):
            for dim in DIMENSIONS:
                if len(planned) >= self.max_queries:
                    return planned
                options = self.templates.get(dim, ())
                if round_idx >= len(options):
                    continue
                query = _WS_RE.sub(" ", options[round_idx].format(**fields)).strip()
                key = normalize_text(query)
                if not key or key in seen:
                    continue
                seen.add(key)
                planned.append((query, dim))

        if not planned:
            log.warning("Planner produced no queries for %r", idea.title)
        return planned
