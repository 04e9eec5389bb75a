"""Dimension analyzers and the pool that runs them concurrently.

Architecture
------------
Each idea is analyzed on six independent dimensions:

- **Market**: size, growth and demand signals for the space.
- **Problem**: how real and painful the problem is for the target user.
- **Barriers**: competition, incumbents and switching costs.
- **Execution**: how hard the idea is to build, sell and distribute.
- **Risks**: regulatory, legal, security and dependency risks.
- **Graveyard**: prior attempts at the same idea that failed, and why.

Every analyzer is an async function of (Idea, curated Evidence) returning one
``DimensionScore``. The default ``LLMAnalyzer`` builds a dimension-specific
dossier from the evidence types that matter for that dimension and asks the
LLM for a 0-100 score with rationale and cited URLs.

``AnalyzerPool`` runs one task per dimension. Each task gets its own slice
of the analysis deadline; a timeout or error in one dimension is recorded
and the others keep running.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from realitycheck.errors import AnalysisFailed, LLMCallError, PartialAnalysisFailure
from realitycheck.ratelimit import TokenBucket
from realitycheck.schemas import DIMENSIONS, Dimension, DimensionScore, Evidence, EvidenceType, Idea
from realitycheck.utils import Deadline

log = logging.getLogger(__name__)

_MAX_DOSSIER_ITEMS = 15
_MAX_SNIPPET = 600

# ---------------------------------------------------------------------------
# Default prompts
# ---------------------------------------------------------------------------

_RESPONSE_FORMAT = """
Score from 0 to 100 where 100 is the most favourable outcome for the founder.
Only cite URLs that appear in the dossier.

Respond with ONLY valid JSON:
{
  "score": <integer 0-100>,
  "rationale": "<2-4 sentences explaining the score>",
  "evidence_refs": ["<url from the dossier>", ...]
}
"""

DEFAULT_MARKET_PROMPT = """\
You are evaluating the MARKET dimension of a startup idea.

Assess the opportunity based on:
- Market size and growth rate, with numbers where the evidence has them
- Demand signals: search interest, funding activity, customer budgets
- Timing: why now, tailwinds or headwinds

Be opinionated. A strong market is large, growing and already spending money \
on the problem. A weak market is niche, shrinking or has no willingness to pay.
""" + _RESPONSE_FORMAT

DEFAULT_PROBLEM_PROMPT = """\
You are evaluating the PROBLEM dimension of a startup idea.

Assess how real the problem is based on:
- Frequency and severity of the pain for the target user
- Evidence of people complaining, hacking workarounds or paying for partial fixes
- Whether the one-liner describes a problem or just a technology

Be opinionated. A strong problem is urgent and expensive. A weak problem is \
a nice-to-have nobody would pay to remove.
""" + _RESPONSE_FORMAT

DEFAULT_BARRIERS_PROMPT = """\
You are evaluating the BARRIERS dimension of a startup idea.

Assess competitive pressure based on:
- Direct competitors and well-funded incumbents
- Switching costs, network effects and distribution lock-in held by others
- Room for a differentiated wedge

Higher scores mean LOWER barriers for a new entrant. A crowded space owned \
by incumbents with strong lock-in scores low.
""" + _RESPONSE_FORMAT

DEFAULT_EXECUTION_PROMPT = """\
You are evaluating the EXECUTION dimension of a startup idea.

Assess how hard the idea is to deliver based on:
- Technical difficulty and dependence on unproven technology
- Go-to-market: sales cycle, pricing power, channel access
- Capital and talent required before first revenue

Higher scores mean EASIER execution. A product a small team can ship and sell \
in months scores high; one that needs years of R&D and enterprise sales scores low.
""" + _RESPONSE_FORMAT

DEFAULT_RISKS_PROMPT = """\
You are evaluating the RISKS dimension of a startup idea.

Assess exposure based on:
- Regulation, licensing and compliance requirements
- Legal liability, privacy and security concerns
- Platform dependency and single points of failure

Higher scores mean LOWER risk. Heavy regulation, liability or dependence on a \
single platform scores low.
""" + _RESPONSE_FORMAT

DEFAULT_GRAVEYARD_PROMPT = """\
You are evaluating the GRAVEYARD dimension of a startup idea.

Look for previous companies that tried this or something close and:
- shut down, pivoted away or were acqui-hired
- publicly explained why they failed

Higher scores mean the graveyard is EMPTY or the failure causes clearly do \
not apply any more. A space littered with recent failures for reasons that \
still hold scores low.
""" + _RESPONSE_FORMAT

# {dimension: system prompt}
DEFAULT_PROMPTS: dict[Dimension, str] = {
    Dimension.MARKET: DEFAULT_MARKET_PROMPT,
    Dimension.PROBLEM: DEFAULT_PROBLEM_PROMPT,
    Dimension.BARRIERS: DEFAULT_BARRIERS_PROMPT,
    Dimension.EXECUTION: DEFAULT_EXECUTION_PROMPT,
    Dimension.RISKS: DEFAULT_RISKS_PROMPT,
    Dimension.GRAVEYARD: DEFAULT_GRAVEYARD_PROMPT,
}

# Evidence types each dimension reads first; falls back to all evidence.
PREFERRED_EVIDENCE: dict[Dimension, frozenset[EvidenceType]] = {
    Dimension.MARKET: frozenset({EvidenceType.NEWS, EvidenceType.DATABASE, EvidenceType.PROFESSIONAL}),
    Dimension.PROBLEM: frozenset({EvidenceType.FORUM, EvidenceType.PROFESSIONAL, EvidenceType.NEWS}),
    Dimension.BARRIERS: frozenset({EvidenceType.DATABASE, EvidenceType.NEWS, EvidenceType.PROFESSIONAL}),
    Dimension.EXECUTION: frozenset({EvidenceType.PROFESSIONAL, EvidenceType.DATABASE, EvidenceType.NEWS}),
    Dimension.RISKS: frozenset({EvidenceType.REGULATORY, EvidenceType.ACADEMIC, EvidenceType.NEWS}),
    Dimension.GRAVEYARD: frozenset({EvidenceType.NEWS, EvidenceType.FORUM, EvidenceType.DATABASE}),
}


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1024,
    ):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            kwargs: dict[str, Any] = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs = {}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False) from exc
        if not isinstance(data, dict):
            raise LLMCallError(f"LLM returned non-object JSON: {text[:200]}", retryable=False)
        return data


class JSONCaller(Protocol):
    async def call(self, system: str, user: str) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Dossier builder
# ---------------------------------------------------------------------------


def select_evidence(dimension: Dimension, evidence: list[Evidence], limit: int = _MAX_DOSSIER_ITEMS) -> list[Evidence]:
    """Evidence of the dimension's preferred types, or everything if none match."""
    preferred = PREFERRED_EVIDENCE.get(dimension, frozenset())
    chosen = [e for e in evidence if e.type in preferred] or list(evidence)
    return chosen[:limit]


def build_dossier(idea: Idea, dimension: Dimension, evidence: list[Evidence]) -> str:
    sections = [
        f"IDEA: {idea.title}",
        f"PITCH: {idea.one_liner}",
    ]
    if idea.category:
        sections.append(f"CATEGORY: {idea.category}")
    if idea.location:
        sections.append(f"LOCATION: {idea.location}")
    sections.append(f"DIMENSION: {dimension.label}")

    items = select_evidence(dimension, evidence)
    if not items:
        sections.append("\nNo research evidence was retrieved. Judge from the idea alone and say so.")
        return "\n".join(sections)

    sections.append(f"\n--- EVIDENCE ({len(items)} items) ---")
    for idx, e in enumerate(items, 1):
        header = f"[{idx}] ({e.type.value.upper()}, {e.source}, quality {e.quality:.2f})"
        if e.title:
            header += f" {e.title}"
        sections.append(header)
        if e.url:
            sections.append(f"    URL: {e.url}")
        if e.snippet:
            sections.append(f"    {e.snippet[:_MAX_SNIPPET]}")
    return "\n".join(sections)


# ---------------------------------------------------------------------------
# Analyzers
# ---------------------------------------------------------------------------


class Analyzer(Protocol):
    dimension: Dimension

    async def analyze(self, idea: Idea, evidence: list[Evidence]) -> DimensionScore:
        ...


def _validate_score(val: Any) -> int:
    try:
        score = float(val)
    except (TypeError, ValueError) as exc:
        raise LLMCallError(f"LLM returned a non-numeric score: {val!r}") from exc
    if score != score:  # NaN
        raise LLMCallError("LLM returned NaN score")
    return int(round(max(0.0, min(100.0, score))))


class LLMAnalyzer:
    """One dimension scored by a single LLM call over a filtered dossier."""

    def __init__(self, dimension: Dimension, client: JSONCaller, prompt: str | None = None):
        self.dimension = dimension
        self.client = client
        self.prompt = prompt or DEFAULT_PROMPTS[dimension]

    async def analyze(self, idea: Idea, evidence: list[Evidence]) -> DimensionScore:
        dossier = build_dossier(idea, self.dimension, evidence)
        raw = await self.client.call(self.prompt, dossier)
        known_urls = {e.url for e in select_evidence(self.dimension, evidence) if e.url}
        refs = raw.get("evidence_refs") or []
        if not isinstance(refs, list):
            refs = []
        return DimensionScore(
            dimension=self.dimension,
            score=_validate_score(raw.get("score")),
            rationale=str(raw.get("rationale", "")).strip(),
            evidence_refs=list(dict.fromkeys(str(r) for r in refs if str(r) in known_urls)),
        )


def default_analyzers(client: JSONCaller, prompts: Mapping[Dimension, str] | None = None) -> dict[Dimension, Analyzer]:
    p = prompts or {}
    return {d: LLMAnalyzer(d, client, p.get(d)) for d in DIMENSIONS}


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


@dataclass
class PoolResult:
    scores: list[DimensionScore] = field(default_factory=list)
    failures: dict[Dimension, str] = field(default_factory=dict)

    @property
    def missing(self) -> list[Dimension]:
        done = {s.dimension for s in self.scores}
        return [d for d in DIMENSIONS if d not in done]

    def check(self) -> None:
        """Raise AnalysisFailed if nothing succeeded, PartialAnalysisFailure if some failed."""
        if not self.scores:
            detail = "; ".join(f"{d.value}: {msg}" for d, msg in self.failures.items())
            raise AnalysisFailed(f"all analyzers failed ({detail})" if detail else "all analyzers failed")
        if self.missing:
            raise PartialAnalysisFailure(d.value for d in self.missing)


class AnalyzerPool:
    """Runs one task per dimension and collects results as they complete."""

    def __init__(
        self,
        analyzers: Mapping[Dimension, Analyzer],
        analyzer_timeout: float | None = None,
        limiter: TokenBucket | None = None,
    ):
        self.analyzers = dict(analyzers)
        self.analyzer_timeout = analyzer_timeout
        self.limiter = limiter

    async def _run_one(self, dimension: Dimension, analyzer: Analyzer, idea: Idea,
                       evidence: list[Evidence], deadline: Deadline) -> DimensionScore:
        async def call() -> DimensionScore:
            if self.limiter is not None:
                await self.limiter.acquire(1, deadline)
            return await analyzer.analyze(idea, evidence)

        score = await asyncio.wait_for(call(), timeout=deadline.bounded(self.analyzer_timeout))
        if score.dimension is not dimension:
            raise LLMCallError(f"{dimension.value} analyzer returned a {score.dimension.value} score")
        return score

    async def run(self, idea: Idea, evidence: list[Evidence], deadline: Deadline) -> PoolResult:
        result = PoolResult()
        for dim in DIMENSIONS:
            if dim not in self.analyzers:
                result.failures[dim] = "no analyzer configured"

        tasks = {
            asyncio.create_task(self._run_one(d, a, idea, evidence, deadline), name=f"analyze:{d.value}"): d
            for d, a in self.analyzers.items()
        }
        if not tasks:
            return result

        collected: dict[Dimension, DimensionScore] = {}
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    dim = tasks[task]
                    exc = None if task.cancelled() else task.exception()
                    if exc is None and not task.cancelled():
                        collected[dim] = task.result()
                        log.debug("Analyzer %s scored %d", dim.value, collected[dim].score)
                    elif task.cancelled() or isinstance(exc, asyncio.TimeoutError):
                        result.failures[dim] = "timed out"
                        log.warning("Analyzer %s timed out", dim.value)
                    else:
                        result.failures[dim] = str(exc) or type(exc).__name__
                        log.warning("Analyzer %s failed: %s", dim.value, result.failures[dim])
        finally:
            for task in pending:
                task.cancel()

        result.scores = [collected[d] for d in DIMENSIONS if d in collected]
        return result
