"""End-to-end analysis lifecycle: plan, gather, normalize, analyze, score.

The Orchestrator is the only writer of an Analysis while it runs. Status
moves ``pending -> gathering -> analyzing -> scoring -> completed``, or to
``failed`` from any non-terminal state. One deadline per analysis starts at
``pending -> gathering`` and bounds every step after it. Terminal analyses
are handed to the AnalysisStore.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from realitycheck.analyzers import Analyzer, AnalyzerPool, LLMClient, default_analyzers
from realitycheck.cache import ResearchCache
from realitycheck.config import Settings
from realitycheck.db import AnalysisStore, CacheStore, Database
from realitycheck.errors import AnalysisFailed, NotFound, PartialAnalysisFailure, ValidationError
from realitycheck.gatherer import EvidenceGatherer
from realitycheck.normalizer import EvidenceNormalizer
from realitycheck.planner import SearchPlanner
from realitycheck.ratelimit import TokenBucket
from realitycheck.research import DuckDuckGoProvider, ResearchProvider
from realitycheck.schemas import Analysis, AnalysisRequest, AnalysisStatus, Dimension
from realitycheck.scoring import ScoringAggregator
from realitycheck.utils import Deadline

log = logging.getLogger(__name__)


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        provider: ResearchProvider,
        analyzers: Mapping[Dimension, Analyzer],
        store: AnalysisStore | None = None,
        *,
        limiter: TokenBucket | None = None,
        cache: ResearchCache | None = None,
        rate_limit_analyzers: bool = True,
    ):
        self.settings = settings
        self.store = store
        self.limiter = limiter or TokenBucket(settings.requests_per_second, settings.burst)
        self.cache = cache or ResearchCache(settings.cache_capacity, settings.cache_ttl)
        self.planner = SearchPlanner(settings.max_queries)
        self.gatherer = EvidenceGatherer(provider, self.limiter, self.cache, settings.gather_workers)
        self.normalizer = EvidenceNormalizer(settings.min_quality, settings.strip_query_strings)
        self.pool = AnalyzerPool(
            analyzers,
            analyzer_timeout=settings.analysis_timeout * settings.analyzer_timeout_fraction,
            limiter=self.limiter if rate_limit_analyzers else None,
        )
        self.aggregator = ScoringAggregator(settings.weights)
        self._records: dict[str, Analysis] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # -- public API ----------------------------------------------------------

    def submit(self, request: AnalysisRequest | Mapping[str, Any]) -> str:
        """Validate, record a pending analysis, start it in the background."""
        if not isinstance(request, AnalysisRequest):
            try:
                request = AnalysisRequest.model_validate(request)
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid analysis request: {exc}") from exc

        analysis = Analysis(request=request)
        self._records[analysis.id] = analysis
        task = asyncio.get_running_loop().create_task(self._execute(analysis), name=f"analysis:{analysis.id}")
        self._tasks[analysis.id] = task
        task.add_done_callback(lambda _t, aid=analysis.id: self._tasks.pop(aid, None))
        log.info("Submitted analysis %s for %r", analysis.id, request.idea.title)
        return analysis.id

    async def wait(self, analysis_id: str) -> Analysis:
        task = self._tasks.get(analysis_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_analysis(analysis_id)

    async def run(self, request: AnalysisRequest | Mapping[str, Any]) -> Analysis:
        """Submit and wait for the terminal analysis."""
        return await self.wait(self.submit(request))

    def get_analysis(self, analysis_id: str) -> Analysis:
        analysis = self._records.get(analysis_id)
        if analysis is not None:
            return analysis.model_copy(deep=True)
        if self.store is None:
            raise NotFound(f"analysis {analysis_id} not found")
        return self.store.get(analysis_id)

    def search(self, text: str = "", limit: int = 20, offset: int = 0) -> list[Analysis]:
        if self.store is None:
            return []
        return self.store.search(text, limit, offset)

    def delete(self, analysis_id: str) -> None:
        if analysis_id in self._tasks:
            raise ValidationError(f"analysis {analysis_id} is still running")
        removed = self._records.pop(analysis_id, None)
        if self.store is None:
            if removed is None:
                raise NotFound(f"analysis {analysis_id} not found")
            return
        try:
            self.store.delete(analysis_id)
        except NotFound:
            if removed is None:
                raise

    @property
    def running(self) -> list[str]:
        return list(self._tasks)

    async def shutdown(self) -> None:
        """Wait for running analyses and abandoned queries still draining."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        await self.gatherer.drain()

    # -- lifecycle -----------------------------------------------------------

    def _advance(self, analysis: Analysis, status: AnalysisStatus) -> None:
        analysis.advance(status)
        log.info("Analysis %s -> %s", analysis.id, status.value)

    async def _execute(self, analysis: Analysis) -> None:
        try:
            await self._pipeline(analysis)
        except AnalysisFailed as exc:
            self._fail(analysis, str(exc))
        except asyncio.CancelledError:
            self._fail(analysis, "analysis cancelled")
            self._persist(analysis)
            raise
        except Exception as exc:
            log.exception("Analysis %s crashed", analysis.id)
            self._fail(analysis, f"unexpected error: {exc}")
        self._persist(analysis)

    async def _pipeline(self, analysis: Analysis) -> None:
        request = analysis.request
        settings = self.settings

        self._advance(analysis, AnalysisStatus.GATHERING)
        deadline = Deadline(settings.analysis_timeout)
        try:
            queries = self.planner.plan(request)
        except Exception as exc:
            raise AnalysisFailed(f"planning failed: {exc}") from exc
        analysis.queries = queries
        if not queries:
            log.warning("Analysis %s has no queries; analyzing without evidence", analysis.id)

        try:
            gathered = await self.gatherer.gather(queries, deadline, request.location_bias)
        except Exception as exc:
            raise AnalysisFailed(f"gathering failed: {exc}") from exc
        log.info(
            "Analysis %s gathered %d items (%d/%d queries ok, %d failed, %d abandoned)",
            analysis.id, len(gathered.evidence), len(gathered.completed), len(queries),
            len(gathered.failed), len(gathered.abandoned),
        )

        options = request.options
        per_query_cap = options.per_query_cap or settings.max_evidence_per_query
        max_total = options.max_evidence if options.max_evidence is not None else settings.max_evidence
        analysis.evidence = self.normalizer.normalize(gathered.evidence, per_query_cap, max_total)

        self._advance(analysis, AnalysisStatus.ANALYZING)
        result = await self.pool.run(request.idea, analysis.evidence, deadline)
        analysis.set_scores(result.scores)
        try:
            result.check()
        except PartialAnalysisFailure as exc:
            log.warning("Analysis %s partial: %s", analysis.id, exc)

        self._advance(analysis, AnalysisStatus.SCORING)
        analysis.overall_score = self.aggregator.aggregate(analysis.dimension_scores)
        analysis.verdict = self.aggregator.verdict(analysis.overall_score)
        self._advance(analysis, AnalysisStatus.COMPLETED)
        log.info(
            "Analysis %s completed: score=%d verdict=%s missing=%s",
            analysis.id, analysis.overall_score, analysis.verdict,
            [d.value for d in analysis.missing_dimensions] or "none",
        )

    def _fail(self, analysis: Analysis, message: str) -> None:
        if analysis.is_terminal:
            return
        analysis.error = message
        analysis.overall_score = None
        analysis.verdict = None
        self._advance(analysis, AnalysisStatus.FAILED)
        log.warning("Analysis %s failed: %s", analysis.id, message)

    def _persist(self, analysis: Analysis) -> None:
        if self.store is None:
            return
        try:
            self.store.put(analysis)
        except Exception as exc:
            log.warning("Failed to persist analysis %s, keeping it in memory: %s", analysis.id, exc)
            return
        self._records.pop(analysis.id, None)


def build_orchestrator(
    settings: Settings,
    db: Database | None = None,
    provider: ResearchProvider | None = None,
    analyzers: Mapping[Dimension, Analyzer] | None = None,
) -> Orchestrator:
    """Wire the production services from one Settings object."""
    settings.ensure_directories()
    db = db or Database(settings.db_url)
    cache = ResearchCache(settings.cache_capacity, settings.cache_ttl, store=CacheStore(db))
    if provider is None:
        provider = DuckDuckGoProvider(max_results=settings.max_evidence_per_query)
    if analyzers is None:
        client = LLMClient(
            provider=settings.llm_provider,
            model=settings.llm_model,
            api_key=settings.llm_api_key or None,
        )
        analyzers = default_analyzers(client)
    return Orchestrator(settings, provider, analyzers, AnalysisStore(db), cache=cache)
