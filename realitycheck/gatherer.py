from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from realitycheck.cache import ResearchCache
from realitycheck.errors import RateLimitTimeout, UpstreamError
from realitycheck.ratelimit import TokenBucket
from realitycheck.research import ResearchProvider
from realitycheck.schemas import Evidence
from realitycheck.utils import Deadline, fingerprint

log = logging.getLogger(__name__)


@dataclass
class GatherResult:
    evidence: list[Evidence] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    abandoned: list[str] = field(default_factory=list)
    from_cache: int = 0


class EvidenceGatherer:
    """Runs research queries through the rate limiter and cache.

    Per-query failures are absorbed. Once the deadline passes, queries that
    have not finished are abandoned and whatever completed is returned;
    upstream calls already running are left to drain in the background.
    """

    def __init__(
        self,
        provider: ResearchProvider,
        limiter: TokenBucket,
        cache: ResearchCache,
        workers: int = 4,
    ):
        self.provider = provider
        self.limiter = limiter
        self.cache = cache
        self.workers = max(1, workers)
        self._draining: set[asyncio.Task] = set()

    async def _run_query(
        self, query: str, deadline: Deadline, location_bias: str | None, slots: asyncio.Semaphore,
    ) -> tuple[list[Evidence], bool]:
        async with slots:
            if deadline.expired:
                raise asyncio.TimeoutError
            key = fingerprint(query, location_bias)

            async def fetch() -> list[Evidence]:
                await self.limiter.acquire(1, deadline)
                return await self.provider.query(query, deadline)

            return await self.cache.get_or_fetch(key, fetch)

    async def gather(
        self, queries: list[str], deadline: Deadline, location_bias: str | None = None,
    ) -> GatherResult:
        result = GatherResult()
        if not queries:
            return result

        slots = asyncio.Semaphore(self.workers)
        tasks = {
            asyncio.create_task(self._run_query(q, deadline, location_bias, slots), name=f"gather:{q}"): q
            for q in queries
        }
        done, pending = await asyncio.wait(tasks, timeout=deadline.remaining())

        for task in done:
            query = tasks[task]
            exc = task.exception()
            if exc is None:
                batch, cached = task.result()
                result.evidence.extend(batch)
                result.completed.append(query)
                result.from_cache += int(cached)
            elif isinstance(exc, (UpstreamError, RateLimitTimeout, asyncio.TimeoutError)):
                reason = str(exc) or "deadline reached"
                log.warning("Query %r failed: %s", query, reason)
                result.failed[query] = reason
            else:
                log.error("Query %r failed unexpectedly", query, exc_info=exc)
                result.failed[query] = f"unexpected error: {exc}"

        for task in pending:
            query = tasks[task]
            result.abandoned.append(query)
            self._drain(task)
        if pending:
            log.warning("Deadline reached: abandoned %d of %d queries", len(pending), len(queries))

        order = {q: i for i, q in enumerate(queries)}
        result.completed.sort(key=order.__getitem__)
        result.abandoned.sort(key=order.__getitem__)
        return result

    def _drain(self, task: asyncio.Task) -> None:
        """Let an abandoned query finish on its own; its result still lands in the cache."""
        self._draining.add(task)

        def _done(t: asyncio.Task) -> None:
            self._draining.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.debug("Abandoned query finished with error: %s", t.exception())

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for abandoned queries still running."""
        if self._draining:
            await asyncio.gather(*list(self._draining), return_exceptions=True)
