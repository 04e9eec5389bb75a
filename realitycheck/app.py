from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from realitycheck.config import Settings, load_settings
from realitycheck.errors import NotFound, ValidationError
from realitycheck.orchestrator import Orchestrator, build_orchestrator
from realitycheck.report import render_json, render_markdown
from realitycheck.schemas import (
    Analysis,
    AnalysisListResponse,
    AnalysisRequest,
    AnalysisStatus,
    AnalysisSummary,
    SubmitResponse,
)

log = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def require_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    """Bearer check; a no-op when no token is configured."""
    expected = request.app.state.settings.bearer_token
    if not expected:
        return
    if credentials is None or credentials.scheme.lower() != "bearer" or credentials.credentials != expected:
        raise HTTPException(401, "Invalid or missing bearer token", headers={"WWW-Authenticate": "Bearer"})


def _summary(analysis: Analysis) -> AnalysisSummary:
    idea = analysis.request.idea
    return AnalysisSummary(
        id=analysis.id,
        title=idea.title,
        one_liner=idea.one_liner,
        status=analysis.status,
        overall_score=analysis.overall_score,
        verdict=analysis.verdict,
        missing_dimensions=analysis.missing_dimensions,
        created_at=analysis.created_at,
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, orchestrator: Orchestrator | None = None) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = build_orchestrator(settings)
        yield
        await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="RealityCheck",
        version="0.1.0",
        description=(
            "Startup idea analysis API. Submit an idea, then poll the analysis "
            "until it completes. All /v1 endpoints require a bearer token when one is configured."
        ),
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Analyses", "description": "Submit, inspect, search and delete analyses."},
            {"name": "Health", "description": "Liveness probe."},
        ],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        log.info(
            "%s %s -> %d (%.1fms)",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # -- Routes: Health ------------------------------------------------------

    @app.get("/health", tags=["Health"], summary="Liveness probe")
    async def health():
        return {"status": "ok"}

    # -- Routes: Analyses ----------------------------------------------------

    @app.post("/v1/analyze", response_model=SubmitResponse, status_code=202,
              tags=["Analyses"], summary="Submit an idea for analysis",
              dependencies=[Depends(require_token)])
    async def analyze(body: AnalysisRequest, orch: Orchestrator = Depends(get_orchestrator)):
        analysis_id = orch.submit(body)
        return SubmitResponse(id=analysis_id, status=AnalysisStatus.PENDING)

    @app.get("/v1/analyses", response_model=AnalysisListResponse,
             tags=["Analyses"], summary="Search stored analyses by title, pitch or category",
             dependencies=[Depends(require_token)])
    async def list_analyses(
        q: str = Query("", description="Free-text search across title, one-liner and category"),
        limit: int = Query(20, ge=1, le=200),
        offset: int = Query(0, ge=0),
        orch: Orchestrator = Depends(get_orchestrator),
    ):
        items = orch.search(q, limit, offset)
        return AnalysisListResponse(items=[_summary(a) for a in items], limit=limit, offset=offset)

    @app.get("/v1/analyses/{analysis_id}", response_model=Analysis,
             tags=["Analyses"], summary="Get an analysis, running or finished",
             dependencies=[Depends(require_token)])
    async def get_analysis(analysis_id: str, orch: Orchestrator = Depends(get_orchestrator)):
        return orch.get_analysis(analysis_id)

    @app.get("/v1/analyses/{analysis_id}/report",
             tags=["Analyses"], summary="Render an analysis report as JSON or Markdown",
             dependencies=[Depends(require_token)])
    async def get_report(
        analysis_id: str,
        format: str = Query("json", pattern="^(json|markdown)$"),
        orch: Orchestrator = Depends(get_orchestrator),
    ):
        analysis = orch.get_analysis(analysis_id)
        if format == "markdown":
            return PlainTextResponse(render_markdown(analysis, orch.aggregator.weights), media_type="text/markdown")
        return PlainTextResponse(render_json(analysis, orch.aggregator.weights), media_type="application/json")

    @app.delete("/v1/analyses/{analysis_id}", tags=["Analyses"], summary="Delete a finished analysis",
                dependencies=[Depends(require_token)])
    async def delete_analysis(analysis_id: str, orch: Orchestrator = Depends(get_orchestrator)):
        try:
            orch.delete(analysis_id)
        except ValidationError as exc:
            raise HTTPException(409, str(exc)) from exc
        return {"ok": True}

    return app


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    main()
