from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Mapping

from rich.box import ROUNDED
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from realitycheck.schemas import DIMENSIONS, Analysis, Dimension
from realitycheck.scoring import CANONICAL_WEIGHTS

REPORT_FORMATS = ("json", "markdown")
_MAX_SOURCES = 10


def report_payload(analysis: Analysis, weights: Mapping[Dimension, Decimal] | None = None) -> dict[str, Any]:
    """Flat, presentation-ready view of an analysis.

    *weights* are the ones the score was aggregated with; canonical by default.
    """
    weights = weights or CANONICAL_WEIGHTS
    idea = analysis.request.idea
    dimensions = []
    for dim in DIMENSIONS:
        score = analysis.score_for(dim)
        dimensions.append({
            "dimension": dim.value,
            "weight": str(weights[dim]),
            "status": "scored" if score else "not run",
            "score": score.score if score else None,
            "rationale": score.rationale if score else "",
            "evidence_refs": list(score.evidence_refs) if score else [],
        })
    return {
        "id": analysis.id,
        "title": idea.title,
        "one_liner": idea.one_liner,
        "category": idea.category,
        "location": idea.location,
        "status": analysis.status.value,
        "overall_score": analysis.overall_score,
        "verdict": analysis.verdict,
        "error": analysis.error,
        "dimensions": dimensions,
        "missing_dimensions": [d.value for d in analysis.missing_dimensions],
        "queries": list(analysis.queries),
        "evidence_count": len(analysis.evidence),
        "sources": [
            {"title": e.title, "url": e.url, "type": e.type.value, "quality": round(e.quality, 2)}
            for e in analysis.evidence[:_MAX_SOURCES]
        ],
        "created_at": analysis.created_at.isoformat(),
        "completed_at": analysis.completed_at.isoformat() if analysis.completed_at else None,
    }


def render_json(analysis: Analysis, weights: Mapping[Dimension, Decimal] | None = None) -> str:
    return json.dumps(report_payload(analysis, weights), indent=2, ensure_ascii=False)


def render_markdown(analysis: Analysis, weights: Mapping[Dimension, Decimal] | None = None) -> str:
    payload = report_payload(analysis, weights)
    lines = [f"# Reality Check: {payload['title']}", "", f"> {payload['one_liner']}", ""]
    meta = [f"- Status: {payload['status']}"]
    if payload["category"]:
        meta.append(f"- Category: {payload['category']}")
    if payload["location"]:
        meta.append(f"- Location: {payload['location']}")
    lines.extend(meta)
    lines.append("")

    if payload["status"] == "failed":
        lines.extend(["## Failed", "", payload["error"] or "unknown error", ""])
        return "\n".join(lines)

    lines.extend(["## Summary", ""])
    if payload["overall_score"] is not None:
        lines.append(f"- Overall score: **{payload['overall_score']}/100**")
        lines.append(f"- Verdict: **{payload['verdict']}**")
    if payload["missing_dimensions"]:
        lines.append(f"- Not run: {', '.join(payload['missing_dimensions'])}")
    lines.append(f"- Evidence items: {payload['evidence_count']}")
    lines.append("")

    lines.extend(["## Dimensions", "", "| Dimension | Weight | Score |", "|---|---|---|"])
    for row in payload["dimensions"]:
        value = str(row["score"]) if row["score"] is not None else "not run"
        lines.append(f"| {row['dimension'].capitalize()} | {row['weight']} | {value} |")
    lines.append("")

    for row in payload["dimensions"]:
        lines.append(f"### {row['dimension'].capitalize()}")
        lines.append("")
        if row["status"] == "not run":
            lines.extend(["_Not run._", ""])
            continue
        lines.append(row["rationale"] or "_No rationale given._")
        for ref in row["evidence_refs"]:
            lines.append(f"- <{ref}>")
        lines.append("")

    if payload["sources"]:
        lines.extend(["## Sources", ""])
        for src in payload["sources"]:
            label = src["title"] or src["url"]
            lines.append(f"- [{label}]({src['url']}) ({src['type']}, quality {src['quality']:.2f})")
        lines.append("")
    return "\n".join(lines)


def render(analysis: Analysis, fmt: str = "json", weights: Mapping[Dimension, Decimal] | None = None) -> str:
    if fmt == "json":
        return render_json(analysis, weights)
    if fmt == "markdown":
        return render_markdown(analysis, weights)
    raise ValueError(f"unknown report format: {fmt!r} (expected one of {', '.join(REPORT_FORMATS)})")


def render_cli(console: Console, analysis: Analysis, weights: Mapping[Dimension, Decimal] | None = None) -> None:
    payload = report_payload(analysis, weights)

    summary = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value")
    summary.add_row("status", payload["status"])
    summary.add_row("overall_score", "-" if payload["overall_score"] is None else str(payload["overall_score"]))
    summary.add_row("verdict", payload["verdict"] or "-")
    summary.add_row("evidence_items", str(payload["evidence_count"]))
    summary.add_row("queries", str(len(payload["queries"])))
    if payload["error"]:
        summary.add_row("error", payload["error"])
    console.print(Panel(summary, title=payload["title"], border_style="cyan"))

    if payload["status"] == "failed":
        return

    dims = Table(show_header=True, header_style="bold green", box=ROUNDED)
    dims.add_column("Dimension", style="bold")
    dims.add_column("Weight", justify="right")
    dims.add_column("Score", justify="right")
    dims.add_column("Rationale")
    for row in payload["dimensions"]:
        score = "[dim]not run[/dim]" if row["score"] is None else str(row["score"])
        dims.add_row(row["dimension"].capitalize(), row["weight"], score, row["rationale"])
    console.print(Panel(dims, title="Dimensions", border_style="green"))
