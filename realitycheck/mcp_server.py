from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import Context, FastMCP

from realitycheck.config import load_settings
from realitycheck.errors import ConfigError, NotFound, ValidationError
from realitycheck.orchestrator import Orchestrator, build_orchestrator
from realitycheck.report import report_payload
from realitycheck.scoring import CANONICAL_WEIGHTS, VERDICT_BANDS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def realitycheck_lifespan(server: FastMCP) -> AsyncIterator[Orchestrator]:
    orch = build_orchestrator(load_settings())
    try:
        yield orch
    finally:
        await orch.shutdown()


mcp = FastMCP(
    "RealityCheck",
    instructions=(
        "RealityCheck scores startup ideas on six dimensions using web research and an LLM. "
        "Call analyze_idea(title, one_liner) to run a full analysis (this can take a minute), "
        "get_analysis(id) to fetch one again, and search_analyses(query) to browse past runs."
    ),
    lifespan=realitycheck_lifespan,
    json_response=True,
)


def _orchestrator(ctx: Context) -> Orchestrator:
    return ctx.request_context.lifespan_context


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("realitycheck://overview")
def realitycheck_overview() -> str:
    """Overview of RealityCheck: dimensions, weights and verdict bands."""
    return json.dumps({
        "system": "RealityCheck: research-backed startup idea analysis",
        "description": (
            "Each idea is turned into web search queries, the results are deduplicated and "
            "quality filtered, and six analyzers score the idea from 0 to 100. The overall "
            "score is the weighted mean over the dimensions that completed."
        ),
        "dimensions": {d.value: str(w) for d, w in CANONICAL_WEIGHTS.items()},
        "verdicts": {verdict: f">= {floor}" for floor, verdict in VERDICT_BANDS},
        "workflow": [
            "1. analyze_idea(title, one_liner, category?, location?): run and wait for the result.",
            "2. get_analysis(id): fetch a finished or running analysis.",
            "3. search_analyses(query): list stored analyses by title, pitch or category.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_idea(
    title: str,
    one_liner: str,
    ctx: Context,
    category: str | None = None,
    location: str | None = None,
) -> dict:
    """Analyze a startup idea end to end and return the scored report.

    Args:
        title: Short name of the idea.
        one_liner: One-sentence pitch.
        category: Optional market category, e.g. "fintech".
        location: Optional target region; also biases the research queries.
    """
    orch = _orchestrator(ctx)
    try:
        orch.settings.validate_for_analysis()
        analysis = await orch.run({
            "idea": {"title": title, "one_liner": one_liner, "category": category, "location": location},
        })
    except (ConfigError, ValidationError) as exc:
        return {"error": str(exc)}
    return report_payload(analysis, orch.aggregator.weights)


@mcp.tool()
def get_analysis(analysis_id: str, ctx: Context) -> dict:
    """Get the report for one analysis by id."""
    try:
        orch = _orchestrator(ctx)
        return report_payload(orch.get_analysis(analysis_id), orch.aggregator.weights)
    except NotFound as exc:
        return {"error": str(exc)}


@mcp.tool()
def search_analyses(ctx: Context, query: str = "", limit: int = 20, offset: int = 0) -> list[dict]:
    """Search stored analyses.

    Args:
        query: Free-text search across title, one-liner and category.
        limit: Max results (default 20, max 200).
        offset: Number of results to skip.
    """
    items = _orchestrator(ctx).search(query, max(1, min(limit, 200)), max(0, offset))
    return [
        {
            "id": a.id, "title": a.request.idea.title, "status": a.status.value,
            "overall_score": a.overall_score, "verdict": a.verdict,
            "missing_dimensions": [d.value for d in a.missing_dimensions],
        }
        for a in items
    ]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the RealityCheck MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
