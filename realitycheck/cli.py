from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from realitycheck.config import load_settings
from realitycheck.errors import ConfigError, ValidationError
from realitycheck.orchestrator import build_orchestrator
from realitycheck.report import render, render_cli
from realitycheck.schemas import Analysis, AnalysisStatus
from realitycheck.scoring import validate_weights

app = typer.Typer(help="RealityCheck: research-backed startup idea analysis")
console = Console(stderr=True)

_FORMATS = ("table", "json", "markdown")


def _configure_logging(*, verbose: int, json_logs: bool, default: str = "warning") -> None:
    if verbose <= 0:
        level = getattr(logging, default.upper(), logging.WARNING)
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_logs:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s %(name)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file (overridden by env vars)."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Plain log lines instead of rich output."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    settings = load_settings(config_file=config)
    ctx.obj = {"settings": settings}
    _configure_logging(verbose=verbose, json_logs=json_logs, default=settings.log_level)


@app.command()
def analyze(
    ctx: typer.Context,
    title: str = typer.Option(..., "--title", help="Short name of the idea."),
    one_liner: str = typer.Option(..., "--one-liner", help="One-sentence pitch."),
    category: str | None = typer.Option(None, "--category"),
    location: str | None = typer.Option(None, "--location", help="Also used to bias research queries."),
    fmt: str = typer.Option("table", "--format", help="Output format: table, json or markdown."),
    out: Path | None = typer.Option(None, "--out", help="Write the report to this file (json or markdown only)."),
) -> None:
    """Run one analysis to completion and print the report."""
    if fmt not in _FORMATS:
        raise typer.BadParameter(f"expected one of {', '.join(_FORMATS)}", param_hint="--format")
    if fmt == "table" and out is not None:
        raise typer.BadParameter("table output cannot be written to a file; use json or markdown", param_hint="--out")
    settings = ctx.obj["settings"]
    try:
        settings.validate_for_analysis()
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(2) from exc

    payload = {"idea": {"title": title, "one_liner": one_liner, "category": category, "location": location}}

    async def _run() -> Analysis:
        orch = build_orchestrator(settings)
        try:
            with console.status("[bold cyan]Analyzing[/bold cyan]", spinner="dots"):
                return await orch.run(payload)
        finally:
            await orch.shutdown()

    try:
        analysis = asyncio.run(_run())
    except ValidationError as exc:
        console.print(f"[red]Invalid idea:[/red] {exc}")
        raise typer.Exit(2) from exc

    weights = validate_weights(settings.weights) if settings.weights else None
    if fmt == "table":
        render_cli(console, analysis, weights)
    else:
        text = render(analysis, fmt, weights)
        if out is not None:
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(text + "\n", encoding="utf-8")
            console.print(f"[green]✓[/green] Report written to {out}")
        else:
            typer.echo(text)

    if analysis.status is AnalysisStatus.FAILED:
        raise typer.Exit(1)


@app.command()
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Defaults to the host of HTTP_ADDR."),
    port: int | None = typer.Option(None, "--port", help="Defaults to the port of HTTP_ADDR."),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    from realitycheck.app import create_app

    settings = ctx.obj["settings"]
    uvicorn.run(
        create_app(settings),
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_config=None,
    )


@app.command()
def mcp() -> None:
    """Start the MCP tool server on stdio."""
    from realitycheck.mcp_server import main

    main()


if __name__ == "__main__":
    app()
