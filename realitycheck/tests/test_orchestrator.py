"""End-to-end tests for the analysis lifecycle with fake research and analyzers."""
from __future__ import annotations

import asyncio
import hashlib
from unittest.mock import MagicMock

import pytest

from realitycheck.config import Settings
from realitycheck.db import AnalysisStore, Database
from realitycheck.errors import LLMCallError, NotFound, UpstreamError, ValidationError
from realitycheck.orchestrator import Orchestrator
from realitycheck.schemas import DIMENSIONS, AnalysisStatus, Dimension, DimensionScore, Evidence, EvidenceType

SCORES = {
    Dimension.MARKET: 80,
    Dimension.PROBLEM: 70,
    Dimension.BARRIERS: 60,
    Dimension.EXECUTION: 50,
    Dimension.RISKS: 40,
    Dimension.GRAVEYARD: 40,
}

LOOM = {"idea": {"title": "Loom", "one_liner": "Agentic coding assistant"}}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    def __init__(self, per_query: int = 2, error: Exception | None = None):
        self.per_query = per_query
        self.error = error
        self.calls: list[str] = []

    async def query(self, text, deadline):
        self.calls.append(text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        slug = hashlib.sha1(text.encode()).hexdigest()[:8]
        return [
            Evidence(
                source="techcrunch.com", type=EvidenceType.NEWS,
                url=f"https://techcrunch.com/{slug}/{i}", title=f"{text} #{i}",
                snippet=f"Evidence {i} for {text}", quality=0.8 - i * 0.1, query=text,
            )
            for i in range(self.per_query)
        ]


class StubAnalyzer:
    def __init__(self, dimension: Dimension, score: int, delay: float = 0.0, error: Exception | None = None):
        self.dimension = dimension
        self.score = score
        self.delay = delay
        self.error = error
        self.seen_evidence: list[Evidence] | None = None

    async def analyze(self, idea, evidence):
        self.seen_evidence = evidence
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return DimensionScore(dimension=self.dimension, score=self.score, rationale=f"{idea.title}: {self.dimension.value}")


def stub_analyzers(**overrides) -> dict[Dimension, StubAnalyzer]:
    analyzers = {d: StubAnalyzer(d, SCORES[d]) for d in DIMENSIONS}
    for name, analyzer in overrides.items():
        analyzers[Dimension(name)] = analyzer
    return analyzers


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        db_url="sqlite:///:memory:",
        requests_per_second=1000,
        burst=100,
        max_queries=6,
        analysis_timeout=5.0,
        analyzer_timeout_fraction=0.75,
    )


@pytest.fixture()
def store() -> AnalysisStore:
    return AnalysisStore(Database())


def make_orchestrator(settings, provider=None, analyzers=None, store=None) -> Orchestrator:
    return Orchestrator(settings, provider or FakeProvider(), analyzers or stub_analyzers(), store)


# ---------------------------------------------------------------------------
# Tests: full runs
# ---------------------------------------------------------------------------


class TestFullRun:
    @pytest.mark.asyncio
    async def test_loom_completes_with_all_dimensions(self, settings, store):
        provider = FakeProvider()
        orch = make_orchestrator(settings, provider=provider, store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert [s.dimension for s in analysis.dimension_scores] == list(DIMENSIONS)
        assert analysis.missing_dimensions == []
        assert len(analysis.queries) == 6
        assert sorted(provider.calls) == sorted(analysis.queries)
        assert len(analysis.evidence) == 12
        # 20 + 14 + 9 + 7.5 + 6 + 4 = 60.5
        assert analysis.overall_score == 61
        assert analysis.verdict == "promising"
        assert analysis.completed_at is not None
        assert analysis.failed_at is None
        assert analysis.error is None

    @pytest.mark.asyncio
    async def test_malformed_evidence_url_does_not_fail_run(self, settings, store):
        class BadPortProvider(FakeProvider):
            async def query(self, text, deadline):
                batch = await super().query(text, deadline)
                return batch + [Evidence(source="example.com", url="https://example.com:99999/a", snippet=text, query=text)]

        orch = make_orchestrator(settings, provider=BadPortProvider(), store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert analysis.overall_score == 61
        assert any(e.url == "https://example.com:99999/a" for e in analysis.evidence)

    @pytest.mark.asyncio
    async def test_slow_risks_analyzer_is_dropped_and_renormalized(self, settings, store):
        settings = settings.model_copy(update={"analysis_timeout": 1.0, "analyzer_timeout_fraction": 0.1})
        analyzers = stub_analyzers(risks=StubAnalyzer(Dimension.RISKS, 40, delay=5))
        orch = make_orchestrator(settings, analyzers=analyzers, store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert len(analysis.dimension_scores) == 5
        assert analysis.missing_dimensions == [Dimension.RISKS]
        assert analysis.score_for(Dimension.RISKS) is None
        # 54.5 / 0.85
        assert analysis.overall_score == 64

    @pytest.mark.asyncio
    async def test_all_upstream_failing_still_completes(self, settings, store):
        analyzers = stub_analyzers()
        orch = make_orchestrator(settings, provider=FakeProvider(error=UpstreamError("503")),
                                 analyzers=analyzers, store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert analysis.evidence == []
        assert len(analysis.queries) == 6
        assert all(a.seen_evidence == [] for a in analyzers.values())
        assert analysis.overall_score == 61

    @pytest.mark.asyncio
    async def test_zero_queries_runs_analyzers_on_no_evidence(self, settings, store):
        provider = FakeProvider()
        orch = make_orchestrator(settings.model_copy(update={"max_queries": 0}), provider=provider, store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert analysis.queries == []
        assert provider.calls == []
        assert len(analysis.dimension_scores) == 6

    @pytest.mark.asyncio
    async def test_all_analyzers_failing_fails_the_analysis(self, settings, store):
        analyzers = {d: StubAnalyzer(d, 50, error=LLMCallError("down")) for d in DIMENSIONS}
        orch = make_orchestrator(settings, analyzers=analyzers, store=store)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.FAILED
        assert "all analyzers failed" in analysis.error
        assert analysis.overall_score is None
        assert analysis.verdict is None
        assert analysis.failed_at is not None

    @pytest.mark.asyncio
    async def test_repeat_idea_is_served_from_cache(self, settings, store):
        provider = FakeProvider()
        orch = make_orchestrator(settings, provider=provider, store=store)
        await orch.run(LOOM)
        await orch.run(LOOM)
        assert len(provider.calls) == 6
        assert orch.cache.stats().hits == 6

    @pytest.mark.asyncio
    async def test_per_query_cap_from_options(self, settings, store):
        orch = make_orchestrator(settings, provider=FakeProvider(per_query=4), store=store)
        analysis = await orch.run({**LOOM, "options": {"per_query_cap": 1}})
        assert len(analysis.evidence) == 6


# ---------------------------------------------------------------------------
# Tests: lifecycle and API surface
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_status_moves_forward_only(self, settings, store):
        seen: list[AnalysisStatus] = []

        class WatchingProvider(FakeProvider):
            async def query(self, text, deadline):
                seen.append(orch.get_analysis(analysis_id).status)
                return await super().query(text, deadline)

        class WatchingAnalyzer(StubAnalyzer):
            async def analyze(self, idea, evidence):
                seen.append(orch.get_analysis(analysis_id).status)
                return await super().analyze(idea, evidence)

        orch = make_orchestrator(
            settings, provider=WatchingProvider(),
            analyzers={d: WatchingAnalyzer(d, SCORES[d]) for d in DIMENSIONS}, store=store,
        )
        analysis_id = orch.submit(LOOM)
        assert orch.get_analysis(analysis_id).status is AnalysisStatus.PENDING

        final = await orch.wait(analysis_id)

        assert set(seen[:6]) == {AnalysisStatus.GATHERING}
        assert set(seen[6:]) == {AnalysisStatus.ANALYZING}
        assert final.status is AnalysisStatus.COMPLETED
        assert final.created_at <= final.completed_at

    @pytest.mark.asyncio
    async def test_invalid_request_is_rejected(self, settings):
        orch = make_orchestrator(settings)
        with pytest.raises(ValidationError):
            orch.submit({"idea": {"title": "", "one_liner": "x"}})
        with pytest.raises(ValidationError):
            orch.submit({"idea": {"title": "x"}})

    @pytest.mark.asyncio
    async def test_get_analysis_returns_a_copy(self, settings, store):
        orch = make_orchestrator(settings, store=store)
        analysis_id = orch.submit(LOOM)
        snapshot = orch.get_analysis(analysis_id)
        snapshot.queries.append("tampered")
        await orch.wait(analysis_id)
        assert "tampered" not in orch.get_analysis(analysis_id).queries

    @pytest.mark.asyncio
    async def test_unknown_id(self, settings, store):
        orch = make_orchestrator(settings, store=store)
        with pytest.raises(NotFound):
            orch.get_analysis("missing")
        with pytest.raises(NotFound):
            orch.delete("missing")

    @pytest.mark.asyncio
    async def test_finished_analysis_is_persisted_search_and_delete(self, settings, store):
        orch = make_orchestrator(settings, store=store)
        analysis = await orch.run(LOOM)

        assert store.get(analysis.id).overall_score == 61
        assert [a.id for a in orch.search("coding")] == [analysis.id]
        assert orch.search("nothing-like-this") == []

        orch.delete(analysis.id)
        with pytest.raises(NotFound):
            orch.get_analysis(analysis.id)

    @pytest.mark.asyncio
    async def test_store_failure_keeps_analysis_in_memory(self, settings):
        broken = MagicMock(spec=AnalysisStore)
        broken.put.side_effect = RuntimeError("disk full")
        orch = make_orchestrator(settings, store=broken)

        analysis = await orch.run(LOOM)

        assert analysis.status is AnalysisStatus.COMPLETED
        assert orch.get_analysis(analysis.id).overall_score == 61
        broken.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_running_analysis_is_refused(self, settings, store):
        analyzers = stub_analyzers(market=StubAnalyzer(Dimension.MARKET, 80, delay=0.2))
        orch = make_orchestrator(settings, analyzers=analyzers, store=store)
        analysis_id = orch.submit(LOOM)
        await asyncio.sleep(0)
        with pytest.raises(ValidationError):
            orch.delete(analysis_id)
        await orch.shutdown()
        assert orch.running == []
