"""Pydantic domain types: ideas, evidence, dimension scores and analyses."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from realitycheck.errors import LifecycleError


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Dimension(str, Enum):
    """The six analytical axes, declared in canonical output order."""

    MARKET = "market"
    PROBLEM = "problem"
    BARRIERS = "barriers"
    EXECUTION = "execution"
    RISKS = "risks"
    GRAVEYARD = "graveyard"

    @property
    def label(self) -> str:
        return self.value.capitalize()


DIMENSIONS: tuple[Dimension, ...] = tuple(Dimension)


def canonical_order(dimensions) -> list[Dimension]:
    present = set(dimensions)
    return [d for d in DIMENSIONS if d in present]


class EvidenceType(str, Enum):
    NEWS = "news"
    DATABASE = "database"
    REGULATORY = "regulatory"
    FORUM = "forum"
    PROFESSIONAL = "professional"
    ACADEMIC = "academic"
    OTHER = "other"


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    GATHERING = "gathering"
    ANALYZING = "analyzing"
    SCORING = "scoring"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED)


_STATUS_RANK = {
    AnalysisStatus.PENDING: 0,
    AnalysisStatus.GATHERING: 1,
    AnalysisStatus.ANALYZING: 2,
    AnalysisStatus.SCORING: 3,
    AnalysisStatus.COMPLETED: 4,
    AnalysisStatus.FAILED: 4,
}


# ---------------------------------------------------------------------------
# Request side
# ---------------------------------------------------------------------------


class Idea(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    one_liner: str = Field(min_length=1, max_length=500)
    category: str | None = None
    location: str | None = None


class AnalysisOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_evidence: int | None = Field(default=None, ge=0)
    per_query_cap: int | None = Field(default=None, ge=1)
    location_bias: str | None = None


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    idea: Idea
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)

    @property
    def location_bias(self) -> str | None:
        return self.options.location_bias or self.idea.location


# ---------------------------------------------------------------------------
# Evidence and scores
# ---------------------------------------------------------------------------


class Evidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    type: EvidenceType = EvidenceType.OTHER
    url: str = ""
    title: str = ""
    snippet: str = ""
    quality: float = Field(default=0.5, ge=0.0, le=1.0)
    retrieved_at: datetime = Field(default_factory=_utcnow)
    query: str = ""


class DimensionScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    dimension: Dimension
    score: int = Field(ge=0, le=100)
    rationale: str = ""
    evidence_refs: list[str] = []


# ---------------------------------------------------------------------------
# Analysis record
# ---------------------------------------------------------------------------


class Analysis(BaseModel):
    """One analysis run. Written only by the Orchestrator until terminal."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request: AnalysisRequest
    status: AnalysisStatus = AnalysisStatus.PENDING
    queries: list[str] = []
    evidence: list[Evidence] = []
    dimension_scores: list[DimensionScore] = []
    missing_dimensions: list[Dimension] = []
    overall_score: int | None = None
    verdict: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    def advance(self, status: AnalysisStatus) -> None:
        """Move forward through the lifecycle; backward or repeated moves raise."""
        if self.status.is_terminal:
            raise LifecycleError(f"analysis {self.id} is already {self.status.value}")
        if status is not AnalysisStatus.FAILED and _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            raise LifecycleError(f"cannot move analysis {self.id} from {self.status.value} to {status.value}")
        self.status = status
        if status is AnalysisStatus.COMPLETED:
            self.completed_at = _utcnow()
        elif status is AnalysisStatus.FAILED:
            self.failed_at = _utcnow()

    def set_scores(self, scores: list[DimensionScore]) -> None:
        seen = [s.dimension for s in scores]
        if len(seen) != len(set(seen)):
            raise ValueError("duplicate dimension scores")
        by_dim = {s.dimension: s for s in scores}
        self.dimension_scores = [by_dim[d] for d in canonical_order(by_dim)]
        self.missing_dimensions = [d for d in DIMENSIONS if d not in by_dim]

    def score_for(self, dimension: Dimension) -> DimensionScore | None:
        return next((s for s in self.dimension_scores if s.dimension == dimension), None)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class SubmitResponse(BaseModel):
    id: str
    status: AnalysisStatus


class AnalysisSummary(BaseModel):
    id: str
    title: str
    one_liner: str
    status: AnalysisStatus
    overall_score: int | None = None
    verdict: str | None = None
    missing_dimensions: list[Dimension] = []
    created_at: datetime


class AnalysisListResponse(BaseModel):
    items: list[AnalysisSummary]
    limit: int
    offset: int
