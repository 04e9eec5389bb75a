from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from realitycheck.db import AnalysisStore, CacheStore, Database
from realitycheck.errors import NotFound
from realitycheck.models import AnalysisRecord
from realitycheck.schemas import (
    Analysis,
    AnalysisRequest,
    AnalysisStatus,
    Dimension,
    DimensionScore,
    Evidence,
    Idea,
)


@pytest.fixture()
def db() -> Database:
    return Database("sqlite:///:memory:")


def finished(title: str, one_liner: str, category: str | None = None, age: int = 0) -> Analysis:
    analysis = Analysis(
        request=AnalysisRequest(idea=Idea(title=title, one_liner=one_liner, category=category)),
        created_at=datetime(2025, 1, 1, tzinfo=UTC) + timedelta(minutes=age),
    )
    analysis.advance(AnalysisStatus.SCORING)
    analysis.set_scores([DimensionScore(dimension=Dimension.MARKET, score=70, rationale="ok")])
    analysis.overall_score = 70
    analysis.verdict = "promising"
    analysis.advance(AnalysisStatus.COMPLETED)
    return analysis


class TestAnalysisStore:
    def test_put_get_round_trip(self, db):
        store = AnalysisStore(db)
        analysis = finished("Loom", "Agentic coding assistant")
        store.put(analysis)

        loaded = store.get(analysis.id)
        assert loaded == analysis
        with db.session_scope() as session:
            row = session.execute(select(AnalysisRecord)).scalars().one()
            assert row.status == "completed"
            assert row.overall_score == 70
            assert row.finished_at is not None

    def test_put_is_an_upsert(self, db):
        store = AnalysisStore(db)
        analysis = finished("Loom", "Agentic coding assistant")
        store.put(analysis)
        analysis.verdict = "strong"
        store.put(analysis)
        assert store.get(analysis.id).verdict == "strong"
        assert len(store.search()) == 1

    def test_missing_ids(self, db):
        store = AnalysisStore(db)
        with pytest.raises(NotFound):
            store.get("nope")
        with pytest.raises(NotFound):
            store.delete("nope")

    def test_search_matches_title_pitch_and_category_newest_first(self, db):
        store = AnalysisStore(db)
        a = finished("Loom", "Agentic coding assistant", age=0)
        b = finished("Ledger", "Bookkeeping for freelancers", category="fintech", age=1)
        c = finished("Patchwork", "Code review bot", category="devtools", age=2)
        for item in (a, b, c):
            store.put(item)

        assert [x.id for x in store.search()] == [c.id, b.id, a.id]
        assert [x.id for x in store.search("CODING")] == [a.id]
        assert [x.id for x in store.search("fintech")] == [b.id]
        assert [x.id for x in store.search("o", limit=1, offset=1)] == [b.id]

    def test_delete(self, db):
        store = AnalysisStore(db)
        analysis = finished("Loom", "Agentic coding assistant")
        store.put(analysis)
        store.delete(analysis.id)
        with pytest.raises(NotFound):
            store.get(analysis.id)


class TestCacheStore:
    def test_round_trip_and_expiry(self, db):
        store = CacheStore(db)
        value = [Evidence(source="a.com", url="https://a.com/x", snippet="s", quality=0.7, query="q")]
        store.put("k", value, created_at=100.0, expires_at=160.0)

        loaded, created, expires = store.get("k", now=120.0)
        assert loaded == value
        assert (created, expires) == (100.0, 160.0)

        assert store.get("k", now=160.0) is None
        assert store.get("k", now=120.0) is None  # expired row was removed

    def test_purge_and_clear(self, db):
        store = CacheStore(db)
        store.put("old", [], created_at=0.0, expires_at=10.0)
        store.put("new", [], created_at=0.0, expires_at=1000.0)
        assert store.purge_expired(now=500.0) == 1
        assert store.get("new", now=500.0) is not None
        store.clear()
        assert store.get("new", now=500.0) is None
