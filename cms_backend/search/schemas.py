"""Pydantic models for search requests, results and indexing status."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ═══════════════ SEARCH ═══════════════

def filter_text(value) -> str:
    """Canonical text of a filter or metadata value; booleans compare as JSON literals."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


class SearchRequest(BaseModel):
    query: str = ""
    entity_types: list[str] = Field(default_factory=list)
    public_only: bool = True
    page: int = 1
    page_size: int = 20
    filters: dict[str, Any] = Field(default_factory=dict)

    def cache_payload(self) -> dict:
        """Normalized request used for the cache key — filter and type order never matter."""
        return {
            "query": " ".join(self.query.lower().split()),
            "entity_types": sorted(t.lower() for t in self.entity_types),
            "public_only": self.public_only,
            "page": self.page,
            "page_size": self.page_size,
            "filters": {k: filter_text(v) for k, v in sorted(self.filters.items())},
        }


class SearchResult(BaseModel):
    entity_type: str
    entity_id: int
    title: str = ""
    excerpt: str = ""
    url: str = ""
    score: float = 0.0
    is_public: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_indexed_at: datetime | None = None


class SearchResponse(BaseModel):
    query: str = ""
    results: list[SearchResult] = Field(default_factory=list)
    total_results: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0
    duration_ms: float = 0.0
    from_cache: bool = False


# ═══════════════ INDEXING STATUS ═══════════════

class IndexingJobDto(BaseModel):
    id: int
    job_type: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_entities: int = 0
    processed_entities: int = 0
    failed_entities: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_job(cls, job) -> IndexingJobDto:
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            started_at=job.started_at,
            completed_at=job.completed_at,
            total_entities=job.total_entities,
            processed_entities=job.processed_entities,
            failed_entities=job.failed_entities,
            error_message=job.error_message,
            metadata=job.job_metadata or {},
        )


class IndexingStatus(BaseModel):
    is_running: bool = False
    total_indexed: int = 0
    last_full_index: datetime | None = None
    last_incremental_index: datetime | None = None
    recent_jobs: list[IndexingJobDto] = Field(default_factory=list)
