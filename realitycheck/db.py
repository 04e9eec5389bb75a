from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, delete, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from realitycheck.errors import NotFound
from realitycheck.models import AnalysisRecord, Base, CacheEntry
from realitycheck.schemas import Analysis, Evidence
from realitycheck.utils import json_parse

log = logging.getLogger(__name__)


class Database:
    """Engine + session factory. Constructed once and injected where needed."""

    def __init__(self, url: str = "sqlite:///:memory:", engine: Engine | None = None):
        if engine is None:
            kwargs: dict = {}
            if url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if ":memory:" in url:
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(url, **kwargs)
        self.engine = engine
        Base.metadata.create_all(self.engine)
        self._factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def get_session(self) -> Session:
        return self._factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Transactional scope: commit on success, rollback on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Analysis persistence
# ---------------------------------------------------------------------------


class AnalysisStore:
    """Put / Get / Delete / Search for terminal analyses."""

    def __init__(self, db: Database):
        self.db = db

    def put(self, analysis: Analysis) -> None:
        idea = analysis.request.idea
        with self.db.session_scope() as session:
            record = session.get(AnalysisRecord, analysis.id) or AnalysisRecord(id=analysis.id)
            record.title = idea.title
            record.one_liner = idea.one_liner
            record.category = idea.category or ""
            record.location = idea.location or ""
            record.status = analysis.status.value
            record.overall_score = analysis.overall_score
            record.verdict = analysis.verdict or ""
            record.missing_dimensions_json = json.dumps([d.value for d in analysis.missing_dimensions])
            record.payload_json = analysis.model_dump_json()
            record.created_at = analysis.created_at
            record.finished_at = analysis.completed_at or analysis.failed_at
            session.add(record)

    def get(self, analysis_id: str) -> Analysis:
        with self.db.session_scope() as session:
            record = session.get(AnalysisRecord, analysis_id)
            if record is None:
                raise NotFound(f"analysis {analysis_id} not found")
            return Analysis.model_validate_json(record.payload_json)

    def delete(self, analysis_id: str) -> None:
        with self.db.session_scope() as session:
            result = session.execute(delete(AnalysisRecord).where(AnalysisRecord.id == analysis_id))
            if result.rowcount == 0:
                raise NotFound(f"analysis {analysis_id} not found")

    def search(self, text: str = "", limit: int = 20, offset: int = 0) -> list[Analysis]:
        query = select(AnalysisRecord)
        if text.strip():
            pattern = f"%{text.strip()}%"
            query = query.where(or_(
                AnalysisRecord.title.ilike(pattern),
                AnalysisRecord.one_liner.ilike(pattern),
                AnalysisRecord.category.ilike(pattern),
            ))
        query = query.order_by(AnalysisRecord.created_at.desc(), AnalysisRecord.id).limit(limit).offset(offset)
        with self.db.session_scope() as session:
            rows = session.execute(query).scalars().all()
            return [Analysis.model_validate_json(r.payload_json) for r in rows]


# ---------------------------------------------------------------------------
# Research cache persistence
# ---------------------------------------------------------------------------


class CacheStore:
    """Durable layer behind the in-process research cache."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, key: str, now: float) -> tuple[list[Evidence], float, float] | None:
        """Return ``(value, created_at, expires_at)`` or None when absent or expired."""
        with self.db.session_scope() as session:
            row = session.get(CacheEntry, key)
            if row is None:
                return None
            if row.expires_at <= now:
                session.delete(row)
                return None
            value = [Evidence.model_validate(item) for item in json_parse(row.value_json, [])]
            return value, row.created_at, row.expires_at

    def put(self, key: str, value: list[Evidence], created_at: float, expires_at: float) -> None:
        payload = json.dumps([e.model_dump(mode="json") for e in value])
        with self.db.session_scope() as session:
            row = session.get(CacheEntry, key)
            if row is None:
                session.add(CacheEntry(key=key, value_json=payload, created_at=created_at, expires_at=expires_at))
            else:
                row.value_json = payload
                row.created_at = created_at
                row.expires_at = expires_at

    def delete(self, key: str) -> None:
        with self.db.session_scope() as session:
            session.execute(delete(CacheEntry).where(CacheEntry.key == key))

    def purge_expired(self, now: float) -> int:
        with self.db.session_scope() as session:
            result = session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= now))
            count = result.rowcount or 0
        if count:
            log.debug("Purged %d expired cache rows", count)
        return count

    def clear(self) -> None:
        with self.db.session_scope() as session:
            session.execute(delete(CacheEntry))
