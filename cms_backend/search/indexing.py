"""Indexing coordinator — keeps SearchIndex rows in step with source entities.

Flow (full reindex):
  single-flight lock → job Pending/Running → tombstone every live row
  → re-index each entity type in batches → purge old tombstones → job Completed/Failed

Per-entity failures are logged and counted, never abort a run. Job-level
failures (store unreachable) mark the job Failed and return False.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from cms_backend.config import settings
from cms_backend.models import IndexingJob, SearchIndex
from cms_backend.models.base import utcnow
from cms_backend.models.search_index import JobStatus, JobType
from cms_backend.repositories import Repository
from cms_backend.search.extractors import IndexContent
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator
from cms_backend.services.keyed_lock import KeyedLockRegistry

logger = logging.getLogger(__name__)


@dataclass
class EntitySource:
    """One indexable entity type: where to load it and how to extract it."""
    entity_type: str
    repository: Repository
    extractor: Callable[[Any], IndexContent]


@dataclass
class IndexOutcome:
    total: int = 0
    processed: int = 0
    failed: int = 0
    removed: int = 0
    timed_out: bool = False

    def add(self, other: "IndexOutcome"):
        self.total += other.total
        self.processed += other.processed
        self.failed += other.failed
        self.removed += other.removed
        self.timed_out = self.timed_out or other.timed_out


@dataclass
class _Deadline:
    at: float | None = None
    expired: bool = field(default=False, init=False)

    def passed(self) -> bool:
        if not self.expired and self.at is not None:
            self.expired = asyncio.get_running_loop().time() >= self.at
        return self.expired


def batches(items: list, size: int) -> Iterable[list]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class IndexingCoordinator:
    """Owns every write to the search index."""

    def __init__(
        self,
        index_repository: Repository[SearchIndex],
        job_repository: Repository[IndexingJob],
        sources: list[EntitySource],
        invalidation: CacheInvalidationCoordinator | None = None,
        batch_size: int | None = None,
        timeout_seconds: float | None = None,
        parallel: bool | None = None,
        max_workers: int | None = None,
    ):
        self.index_repository = index_repository
        self.job_repository = job_repository
        self.sources = list(sources)
        self.invalidation = invalidation
        self.batch_size = max(1, batch_size or settings.indexing_batch_size)
        self.timeout_seconds = timeout_seconds or settings.indexing_timeout_minutes * 60
        self.parallel = settings.indexing_parallel if parallel is None else parallel
        self.max_workers = max(1, max_workers or settings.indexing_max_workers)

        self._reindex_lock = asyncio.Lock()
        self.record_locks = KeyedLockRegistry("search-index")
        self._last_stamp: datetime | None = None

    # ═══════════════════════════════════════════════════════════════
    # Sources
    # ═══════════════════════════════════════════════════════════════

    def source_for(self, entity_type: str) -> EntitySource | None:
        wanted = entity_type.lower()
        for source in self.sources:
            if source.entity_type.lower() == wanted:
                return source
        return None

    @property
    def entity_types(self) -> list[str]:
        return [s.entity_type for s in self.sources]

    def is_full_reindex_running(self) -> bool:
        return self._reindex_lock.locked()

    # ═══════════════════════════════════════════════════════════════
    # Record upsert
    # ═══════════════════════════════════════════════════════════════

    def _next_stamp(self) -> datetime:
        """Wall clock, bumped so successive stamps strictly increase."""
        now = utcnow()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def _upsert(self, source: EntitySource, entity) -> SearchIndex:
        extracted = source.extractor(entity)
        async with self.record_locks.hold(f"{source.entity_type}:{entity.id}"):
            live = await self.index_repository.find(
                entity_type=source.entity_type, entity_id=entity.id,
            )
            record = live[0] if live else SearchIndex(
                entity_type=source.entity_type, entity_id=entity.id,
            )
            for duplicate in live[1:]:
                await self.index_repository.soft_delete(duplicate.id)
                logger.warning(
                    "Duplicate index record tombstoned | type=%s | entity_id=%d | record_id=%d",
                    source.entity_type, entity.id, duplicate.id,
                )

            record.title = extracted.title
            record.content = extracted.content
            record.search_vector = extracted.search_vector
            record.is_public = extracted.is_public
            record.index_metadata = dict(extracted.metadata)
            record.last_indexed_at = self._next_stamp()
            record.updated_at = record.last_indexed_at

            if record.id is None:
                return await self.index_repository.add(record)
            return await self.index_repository.update(record)

    async def _index_one(self, source: EntitySource, entity) -> bool:
        try:
            await self._upsert(source, entity)
            return True
        except Exception as e:
            logger.warning(
                "Index entity failed | type=%s | id=%s | %s",
                source.entity_type, getattr(entity, "id", None), str(e)[:200],
            )
            return False

    async def _index_batch(self, source: EntitySource, batch: list, deadline: _Deadline) -> IndexOutcome:
        outcome = IndexOutcome()
        if not self.parallel:
            for entity in batch:
                if deadline.passed():
                    outcome.timed_out = True
                    break
                if await self._index_one(source, entity):
                    outcome.processed += 1
                else:
                    outcome.failed += 1
            return outcome

        workers = asyncio.Semaphore(self.max_workers)

        async def worker(entity) -> bool | None:
            async with workers:
                if deadline.passed():
                    return None
                return await self._index_one(source, entity)

        results = await asyncio.gather(*(worker(e) for e in batch))
        outcome.processed = sum(1 for r in results if r is True)
        outcome.failed = sum(1 for r in results if r is False)
        outcome.timed_out = any(r is None for r in results)
        return outcome

    async def _index_source(
        self,
        source: EntitySource,
        ids: list[int] | None = None,
        updated_since: datetime | None = None,
        deadline: _Deadline | None = None,
        on_batch: Callable[[IndexOutcome], Any] | None = None,
    ) -> IndexOutcome:
        deadline = deadline or _Deadline()
        entities = await source.repository.find(ids=ids or None, updated_since=updated_since)
        outcome = IndexOutcome(total=len(entities))
        for number, batch in enumerate(batches(entities, self.batch_size), start=1):
            if deadline.passed():
                outcome.timed_out = True
                break
            result = await self._index_batch(source, batch, deadline)
            outcome.processed += result.processed
            outcome.failed += result.failed
            logger.debug(
                "Indexed batch | type=%s | batch=%d | processed=%d | failed=%d",
                source.entity_type, number, result.processed, result.failed,
            )
            if on_batch is not None:
                await on_batch(outcome)
            if result.timed_out:
                outcome.timed_out = True
                break
        return outcome

    async def _invalidate_search(self):
        if self.invalidation is not None:
            await self.invalidation.invalidate_search()

    # ═══════════════════════════════════════════════════════════════
    # Public operations
    # ═══════════════════════════════════════════════════════════════

    async def index_entities(self, entity_type: str, ids: list[int] | None = None) -> bool:
        """Index every entity of a type, or only `ids` when given and non-empty.

        Returns False if any entity failed.
        """
        source = self.source_for(entity_type)
        if source is None:
            logger.warning("Index entities skipped — unknown type | type=%s", entity_type)
            return False
        try:
            outcome = await self._index_source(source, ids=ids)
        except Exception as e:
            logger.error("Index entities failed | type=%s | %s", entity_type, str(e)[:200])
            return False
        finally:
            await self._invalidate_search()
        logger.info(
            "Indexed entities | type=%s | processed=%d | failed=%d",
            source.entity_type, outcome.processed, outcome.failed,
        )
        return outcome.failed == 0

    async def index_entity(self, entity_type: str, entity_id: int) -> bool:
        """Index one entity. A missing or deleted entity has its record tombstoned instead."""
        source = self.source_for(entity_type)
        if source is None:
            logger.warning("Index entity skipped — unknown type | type=%s", entity_type)
            return False
        try:
            entity = await source.repository.get_by_id(entity_id)
        except Exception as e:
            logger.error("Index entity failed | type=%s | id=%d | %s", entity_type, entity_id, str(e)[:200])
            return False
        if entity is None:
            await self.remove_from_index(source.entity_type, entity_id)
            return False
        ok = await self._index_one(source, entity)
        await self._invalidate_search()
        return ok

    async def remove_from_index(self, entity_type: str, entity_id: int) -> bool:
        """Tombstone the record for an entity. Succeeds when there is none."""
        source = self.source_for(entity_type)
        canonical = source.entity_type if source else entity_type
        try:
            async with self.record_locks.hold(f"{canonical}:{entity_id}"):
                live = await self.index_repository.find(entity_type=canonical, entity_id=entity_id)
                for record in live:
                    await self.index_repository.soft_delete(record.id)
        except Exception as e:
            logger.error(
                "Remove from index failed | type=%s | id=%d | %s", canonical, entity_id, str(e)[:200],
            )
            return False
        if live:
            logger.info("Removed from index | type=%s | id=%d", canonical, entity_id)
            await self._invalidate_search()
        return True

    async def full_reindex(self) -> bool:
        """Rebuild the whole index. Only one may run per process; a concurrent
        call returns False immediately without creating a job."""
        if self._reindex_lock.locked():
            logger.warning("Full reindex already running — request rejected")
            return False

        async with self._reindex_lock:
            try:
                job = await self.create_job(
                    JobType.FULL, {"description": "Full reindex of all entities"},
                )
            except Exception as e:
                logger.error("Full reindex could not create job | %s", str(e)[:200])
                return False

            try:
                await self.update_job(job.id, JobStatus.RUNNING)
                deadline = _Deadline(asyncio.get_running_loop().time() + self.timeout_seconds)

                tombstoned = await self.index_repository.soft_delete_all()
                await self._invalidate_search()
                logger.info("Full reindex started | job=%d | tombstoned=%d", job.id, tombstoned)

                totals = IndexOutcome()
                per_type: dict[str, dict] = {}
                for source in self.sources:
                    if deadline.passed():
                        totals.timed_out = True
                        break

                    done_processed, done_failed = totals.processed, totals.failed

                    async def progress(current: IndexOutcome):
                        await self.update_job(
                            job.id, JobStatus.RUNNING,
                            processed_entities=done_processed + current.processed,
                            failed_entities=done_failed + current.failed,
                        )

                    outcome = await self._index_source(source, deadline=deadline, on_batch=progress)
                    totals.add(outcome)
                    per_type[source.entity_type] = {
                        "total": outcome.total, "processed": outcome.processed, "failed": outcome.failed,
                    }
                    await self.update_job(
                        job.id, JobStatus.RUNNING,
                        processed_entities=totals.processed,
                        failed_entities=totals.failed,
                        total_entities=totals.total,
                    )
                    await self._invalidate_search()
                    if outcome.timed_out:
                        break

                purged = await self.purge_tombstones()
                success = totals.failed == 0 and not totals.timed_out
                message = None
                if totals.timed_out:
                    message = f"Timed out after {self.timeout_seconds:.0f}s; {totals.processed} entities indexed"
                elif totals.failed:
                    message = f"{totals.failed} of {totals.total} entities failed to index"
                await self.update_job(job.id, JobStatus.RUNNING, metadata={
                    "tombstoned": tombstoned, "purged": purged, "types": per_type,
                })
                await self.complete_job(job.id, success, message)
                logger.info(
                    "Full reindex finished | job=%d | processed=%d | failed=%d | timed_out=%s",
                    job.id, totals.processed, totals.failed, totals.timed_out,
                )
                return success
            except Exception as e:
                logger.error("Full reindex failed | job=%d | %s", job.id, str(e)[:200])
                await self.complete_job(job.id, False, str(e)[:2000])
                return False

    async def incremental_index(self, since: datetime | None = None) -> bool:
        """Re-index entities changed at or after `since` (default: the last hour),
        all entity types in parallel. Soft-deleted entities lose their records."""
        if self._reindex_lock.locked():
            logger.warning("Incremental index skipped — full reindex running")
            return False

        since = since or utcnow() - timedelta(minutes=settings.incremental_window_minutes)
        try:
            job = await self.create_job(JobType.INCREMENTAL, {
                "since": since.isoformat(),
                "description": f"Incremental index since {since.isoformat()}",
            })
        except Exception as e:
            logger.error("Incremental index could not create job | %s", str(e)[:200])
            return False

        try:
            await self.update_job(job.id, JobStatus.RUNNING)
            deadline = _Deadline(asyncio.get_running_loop().time() + self.timeout_seconds)
            outcomes = await asyncio.gather(
                *(self._incremental_source(source, since, deadline) for source in self.sources)
            )
            totals = IndexOutcome()
            for outcome in outcomes:
                totals.add(outcome)

            await self.update_job(
                job.id, JobStatus.RUNNING,
                processed_entities=totals.processed,
                failed_entities=totals.failed,
                total_entities=totals.total,
                metadata={"removed": totals.removed},
            )
            success = totals.failed == 0 and not totals.timed_out
            message = None
            if totals.timed_out:
                message = f"Timed out after {self.timeout_seconds:.0f}s"
            elif totals.failed:
                message = f"{totals.failed} of {totals.total} entities failed to index"
            await self.complete_job(job.id, success, message)
            await self._invalidate_search()
            logger.info(
                "Incremental index finished | job=%d | processed=%d | failed=%d | removed=%d",
                job.id, totals.processed, totals.failed, totals.removed,
            )
            return success
        except Exception as e:
            logger.error("Incremental index failed | job=%d | %s", job.id, str(e)[:200])
            await self.complete_job(job.id, False, str(e)[:2000])
            return False

    async def _incremental_source(self, source: EntitySource, since: datetime, deadline: _Deadline) -> IndexOutcome:
        outcome = await self._index_source(source, updated_since=since, deadline=deadline)
        changed = await source.repository.find(updated_since=since, include_deleted=True)
        for entity in changed:
            if entity.is_deleted and await self.remove_from_index(source.entity_type, entity.id):
                outcome.removed += 1
        return outcome

    def sweep_record_locks(self, limit: int | None = None) -> int:
        """Drop idle per-record upsert locks."""
        return self.record_locks.sweep(limit or settings.hash_lock_sweep_limit)

    async def purge_tombstones(self, older_than: timedelta | None = None) -> int:
        """Physically delete index records tombstoned longer than the retention window."""
        older_than = older_than or timedelta(hours=settings.tombstone_retention_hours)
        purged = await self.index_repository.purge_deleted(utcnow() - older_than)
        if purged:
            logger.info("Purged index tombstones | count=%d", purged)
        return purged

    # ═══════════════════════════════════════════════════════════════
    # Job bookkeeping
    # ═══════════════════════════════════════════════════════════════

    async def create_job(self, job_type: str, metadata: dict | None = None) -> IndexingJob:
        job = IndexingJob(
            job_type=job_type,
            status=JobStatus.PENDING,
            started_at=utcnow(),
            total_entities=0,
            processed_entities=0,
            failed_entities=0,
            job_metadata=dict(metadata or {}),
        )
        return await self.job_repository.add(job)

    async def update_job(
        self,
        job_id: int,
        status: str,
        processed_entities: int | None = None,
        failed_entities: int | None = None,
        total_entities: int | None = None,
        error_message: str | None = None,
        metadata: dict | None = None,
    ) -> bool:
        try:
            job = await self.job_repository.get_by_id(job_id)
            if job is None:
                return False
            job.status = status
            if processed_entities is not None:
                job.processed_entities = processed_entities
            if failed_entities is not None:
                job.failed_entities = failed_entities
            if total_entities is not None:
                job.total_entities = total_entities
            if error_message:
                job.error_message = error_message[:2000]
            if metadata:
                job.job_metadata = {**(job.job_metadata or {}), **metadata}
            job.touch()
            await self.job_repository.update(job)
            return True
        except Exception as e:
            logger.error("Update indexing job failed | job=%d | %s", job_id, str(e)[:200])
            return False

    async def complete_job(self, job_id: int, success: bool = True, error_message: str | None = None) -> bool:
        """Move a job to its terminal state. Terminal jobs are never reopened."""
        try:
            job = await self.job_repository.get_by_id(job_id)
            if job is None:
                return False
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                logger.warning("Indexing job already finished | job=%d | status=%s", job_id, job.status)
                return False
            job.status = JobStatus.COMPLETED if success else JobStatus.FAILED
            job.completed_at = utcnow()
            if error_message:
                job.error_message = error_message[:2000]
            job.touch()
            await self.job_repository.update(job)
            return True
        except Exception as e:
            logger.error("Complete indexing job failed | job=%d | %s", job_id, str(e)[:200])
            return False
