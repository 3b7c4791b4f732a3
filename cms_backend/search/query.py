"""Search query engine — ranked, paginated, cached reads over the search index.

Search never raises: any failure degrades to an empty response that still
echoes the query back.
"""

import logging
import math
import time

from cms_backend.config import settings
from cms_backend.models import IndexingJob, SearchIndex
from cms_backend.models.base import as_utc
from cms_backend.models.search_index import JobStatus, JobType
from cms_backend.repositories import Repository
from cms_backend.search.indexing import IndexingCoordinator
from cms_backend.search.schemas import (
    IndexingJobDto,
    IndexingStatus,
    SearchRequest,
    SearchResponse,
    SearchResult,
    filter_text,
)
from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService

logger = logging.getLogger(__name__)

ENTITY_TYPE_BOOST = {
    "Page": 1.2,
    "ComponentTemplate": 1.1,
    "File": 1.0,
    "User": 0.8,
}

MIN_SUGGESTION_LENGTH = 2
RECENT_JOBS = 10


def split_terms(query: str | None) -> list[str]:
    return (query or "").lower().split()


def relevance_score(record: SearchIndex, terms: list[str]) -> float:
    """+3 per term the title starts with, +2 per term it merely contains,
    +1 per term in the content; scaled by the entity type boost."""
    if not terms:
        return 1.0
    title = (record.title or "").lower()
    content = (record.content or "").lower()
    score = 0.0
    for term in terms:
        if term in title:
            score += 3.0 if title.startswith(term) else 2.0
        if term in content:
            score += 1.0
    return score * ENTITY_TYPE_BOOST.get(record.entity_type, 1.0)


def build_excerpt(content: str | None, terms: list[str], max_length: int = 200) -> str:
    """Window of `max_length` chars centred on the first term hit, "..." marking cuts."""
    if not content or not content.strip():
        return ""
    lowered = content.lower()
    hits = [i for i in (lowered.find(t) for t in terms) if i >= 0]
    if not hits:
        return content[:max_length] + "..." if len(content) > max_length else content

    start = max(0, min(hits) - max_length // 2)
    end = min(len(content), start + max_length)
    excerpt = content[start:end]
    if start > 0:
        excerpt = "..." + excerpt
    if end < len(content):
        excerpt = excerpt + "..."
    return excerpt


def entity_url(entity_type: str, entity_id: int, metadata: dict | None) -> str:
    kind = entity_type.lower()
    if kind == "page":
        slug = (metadata or {}).get("slug")
        return f"/pages/{slug}" if slug else f"/pages/{entity_id}"
    if kind == "file":
        return f"/files/{entity_id}"
    if kind == "user":
        return f"/users/{entity_id}"
    if kind == "componenttemplate":
        return f"/components/{entity_id}"
    return f"/{kind}/{entity_id}"


def matches_filters(record: SearchIndex, filters: dict) -> bool:
    metadata = record.index_metadata or {}
    for key, expected in filters.items():
        if key not in metadata or filter_text(metadata[key]) != filter_text(expected):
            return False
    return True


def matches_terms(record: SearchIndex, terms: list[str]) -> bool:
    title = (record.title or "").lower()
    content = (record.content or "").lower()
    vector = (record.search_vector or "").lower()
    return all(t in title or t in content or t in vector for t in terms)


class SearchQueryEngine:
    """Read side of the search subsystem."""

    def __init__(
        self,
        index_repository: Repository[SearchIndex],
        job_repository: Repository[IndexingJob],
        cache: CacheService,
        indexer: IndexingCoordinator | None = None,
    ):
        self.index_repository = index_repository
        self.job_repository = job_repository
        self.cache = cache
        self.indexer = indexer

    def _normalize(self, request: SearchRequest) -> SearchRequest:
        page_size = request.page_size
        if page_size <= 0:
            page_size = settings.search_default_page_size
        return request.model_copy(update={
            "page": max(1, request.page),
            "page_size": min(page_size, settings.search_max_page_size),
        })

    async def search(self, request: SearchRequest) -> SearchResponse:
        started = time.perf_counter()
        request = self._normalize(request)
        key = self.cache.make_key(f"{cache_keys.SEARCH_PREFIX}:results", request.cache_payload())
        try:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.info("Search cache hit | query=%s", request.query[:100])
                response = SearchResponse.model_validate(cached)
                response.from_cache = True
                return response

            terms = split_terms(request.query)
            wanted_types = {t.lower() for t in request.entity_types}
            equals = {"is_public": True} if request.public_only else {}
            candidates = [
                record for record in await self.index_repository.find(**equals)
                if (not wanted_types or record.entity_type.lower() in wanted_types)
                and matches_terms(record, terms)
                and matches_filters(record, request.filters)
            ]

            scored = [(relevance_score(r, terms), r) for r in candidates]
            scored.sort(key=lambda pair: as_utc(pair[1].last_indexed_at), reverse=True)
            scored.sort(key=lambda pair: pair[0], reverse=True)

            offset = (request.page - 1) * request.page_size
            results = [
                SearchResult(
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    title=record.title,
                    excerpt=build_excerpt(record.content, terms, settings.search_excerpt_length),
                    url=entity_url(record.entity_type, record.entity_id, record.index_metadata),
                    score=round(score, 4),
                    is_public=record.is_public,
                    metadata=record.index_metadata or {},
                    last_indexed_at=as_utc(record.last_indexed_at),
                )
                for score, record in scored[offset:offset + request.page_size]
            ]
            total = len(scored)
            response = SearchResponse(
                query=request.query,
                results=results,
                total_results=total,
                page=request.page,
                page_size=request.page_size,
                total_pages=math.ceil(total / request.page_size) if total else 0,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            await self.cache.set(key, response.model_dump(mode="json"), self.cache.get_ttl("search"))
            logger.info(
                "Search complete | query=%s | total=%d | duration_ms=%.1f",
                request.query[:100], total, response.duration_ms,
            )
            return response
        except Exception as e:
            logger.error("Search failed | query=%s | %s", request.query[:100], str(e)[:200])
            return SearchResponse(
                query=request.query,
                page=request.page,
                page_size=request.page_size,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )

    async def suggest(self, query: str, max_suggestions: int = 5) -> list[SearchResult]:
        """Public titles containing `query`; prefix matches first, then shorter titles."""
        if not query or not query.strip() or len(query.strip()) < MIN_SUGGESTION_LENGTH:
            return []
        needle = query.strip().lower()
        key = cache_keys.suggestions(needle, max_suggestions)

        async def produce() -> list[dict]:
            records = [
                r for r in await self.index_repository.find(is_public=True)
                if needle in (r.title or "").lower()
            ]
            records.sort(key=lambda r: (not r.title.lower().startswith(needle), len(r.title)))
            return [
                SearchResult(
                    entity_type=r.entity_type,
                    entity_id=r.entity_id,
                    title=r.title,
                    url=entity_url(r.entity_type, r.entity_id, r.index_metadata),
                    is_public=r.is_public,
                    metadata=r.index_metadata or {},
                    last_indexed_at=as_utc(r.last_indexed_at),
                ).model_dump(mode="json")
                for r in records[:max_suggestions]
            ]

        try:
            suggestions = await self.cache.get_or_add(key, produce, self.cache.get_ttl("suggestions"))
            return [SearchResult.model_validate(s) for s in suggestions]
        except Exception as e:
            logger.error("Suggest failed | query=%s | %s", query[:100], str(e)[:200])
            return []

    async def get_indexing_status(self) -> IndexingStatus:
        async def produce() -> dict:
            jobs = await self.job_repository.find()
            recent = sorted(jobs, key=lambda j: as_utc(j.started_at), reverse=True)[:RECENT_JOBS]

            def last_completed(job_type: str):
                done = [
                    as_utc(j.completed_at) for j in jobs
                    if j.job_type == job_type and j.status == JobStatus.COMPLETED and j.completed_at
                ]
                return max(done) if done else None

            running = any(j.status == JobStatus.RUNNING for j in jobs)
            if self.indexer is not None and self.indexer.is_full_reindex_running():
                running = True
            return IndexingStatus(
                is_running=running,
                total_indexed=await self.index_repository.count(),
                last_full_index=last_completed(JobType.FULL),
                last_incremental_index=last_completed(JobType.INCREMENTAL),
                recent_jobs=[IndexingJobDto.from_job(j) for j in recent],
            ).model_dump(mode="json")

        try:
            status = await self.cache.get_or_add(
                cache_keys.INDEXING_STATUS, produce, self.cache.get_ttl("indexing_status"),
            )
            return IndexingStatus.model_validate(status)
        except Exception as e:
            logger.error("Indexing status failed | %s", str(e)[:200])
            return IndexingStatus()
