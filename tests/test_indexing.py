"""Tests for the indexing coordinator — against the in-memory store."""

import asyncio
from collections import Counter
from datetime import timedelta
from types import SimpleNamespace

import pytest

from conftest import make_page, make_user
from cms_backend.models import IndexingJob, Page, SearchIndex, User
from cms_backend.models.base import as_utc, utcnow
from cms_backend.models.search_index import JobStatus, JobType
from cms_backend.repositories import MemoryRepository
from cms_backend.search.extractors import clean_text, extract_page, extract_user
from cms_backend.search.indexing import EntitySource, IndexingCoordinator
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator


class GatedRepository(MemoryRepository):
    """Blocks the first `find` until the test opens the gate."""

    def __init__(self, model):
        super().__init__(model)
        self.reached = asyncio.Event()
        self.gate = asyncio.Event()

    async def find(self, *args, **kwargs):
        if not self.gate.is_set():
            self.reached.set()
            await self.gate.wait()
        return await super().find(*args, **kwargs)


class SlowRepository(MemoryRepository):
    def __init__(self, model, delay: float):
        super().__init__(model)
        self.delay = delay

    async def find(self, *args, **kwargs):
        await asyncio.sleep(self.delay)
        return await super().find(*args, **kwargs)


def build(cache, pages=None, users=None, page_extractor=extract_page, **options):
    pages = pages or MemoryRepository(Page)
    users = users or MemoryRepository(User)
    index = MemoryRepository(SearchIndex)
    jobs = MemoryRepository(IndexingJob)
    indexer = IndexingCoordinator(
        index,
        jobs,
        sources=[
            EntitySource("Page", pages, page_extractor),
            EntitySource("User", users, extract_user),
        ],
        invalidation=CacheInvalidationCoordinator(cache),
        **options,
    )
    return SimpleNamespace(pages=pages, users=users, index=index, jobs=jobs, indexer=indexer)


async def seed_pages(repo, count: int):
    for i in range(count):
        await repo.add(make_page(name=f"page-{i}", title=f"Page {i}", slug=f"page-{i}"))


def live_counts(records) -> Counter:
    return Counter((r.entity_type, r.entity_id) for r in records)


# ═══════════════ FULL REINDEX ═══════════════

class TestFullReindex:
    @pytest.mark.asyncio
    async def test_indexes_every_entity(self, cache):
        env = build(cache)
        await seed_pages(env.pages, 3)
        await env.users.add(make_user())

        assert await env.indexer.full_reindex() is True

        records = await env.index.find()
        assert live_counts(records) == Counter({
            ("Page", 1): 1, ("Page", 2): 1, ("Page", 3): 1, ("User", 1): 1,
        })
        job = (await env.jobs.find())[0]
        assert job.job_type == JobType.FULL
        assert job.status == JobStatus.COMPLETED
        assert job.total_entities == 4
        assert job.processed_entities == 4
        assert job.failed_entities == 0
        assert job.completed_at is not None
        assert job.job_metadata["types"]["Page"]["processed"] == 3

    @pytest.mark.asyncio
    async def test_one_live_record_per_entity_across_runs(self, cache):
        env = build(cache, batch_size=2)
        await seed_pages(env.pages, 5)

        stamps: dict[int, list] = {}
        for _ in range(5):
            assert await env.indexer.full_reindex() is True
            records = await env.index.find()
            assert all(n == 1 for n in live_counts(records).values())
            assert len(records) == 5
            for record in records:
                stamps.setdefault(record.entity_id, []).append(as_utc(record.last_indexed_at))

        for history in stamps.values():
            assert all(a < b for a, b in zip(history, history[1:]))

    @pytest.mark.asyncio
    async def test_second_concurrent_call_rejected(self, cache):
        pages = GatedRepository(Page)
        env = build(cache, pages=pages)
        await pages.add(make_page())

        first = asyncio.create_task(env.indexer.full_reindex())
        await pages.reached.wait()

        assert env.indexer.is_full_reindex_running()
        assert await env.indexer.full_reindex() is False
        assert len(await env.jobs.find()) == 1

        pages.gate.set()
        assert await first is True
        assert not env.indexer.is_full_reindex_running()

    @pytest.mark.asyncio
    async def test_tombstones_before_refill(self, cache):
        env = build(cache)
        await seed_pages(env.pages, 2)
        assert await env.indexer.full_reindex() is True

        pages = GatedRepository(Page)
        for page in await env.pages.find():
            await pages.add(page)
        env.indexer.sources[0] = EntitySource("Page", pages, extract_page)

        run = asyncio.create_task(env.indexer.full_reindex())
        await pages.reached.wait()
        # Mid-run: every previous record is tombstoned, none refilled yet
        assert await env.index.find() == []
        tombstones = [r for r in await env.index.find(include_deleted=True) if r.is_deleted]
        assert len(tombstones) == 2

        pages.gate.set()
        assert await run is True
        assert len(await env.index.find()) == 2

        await asyncio.sleep(0.001)
        assert await env.indexer.purge_tombstones(older_than=timedelta(0)) == 2
        assert len(await env.index.find(include_deleted=True)) == 2

    @pytest.mark.asyncio
    async def test_clears_search_cache(self, cache):
        env = build(cache)
        await cache.set("search:results:abc", {"query": "x"})
        await cache.set("suggestions:ab:5", [])
        await env.indexer.full_reindex()
        assert await cache.get("search:results:abc") is None
        assert await cache.get("suggestions:ab:5") is None

    @pytest.mark.asyncio
    async def test_partial_failure(self, cache):
        def flaky(page):
            if page.id == 2:
                raise ValueError("cannot extract")
            return extract_page(page)

        env = build(cache, page_extractor=flaky)
        await seed_pages(env.pages, 3)

        assert await env.indexer.full_reindex() is False

        assert sorted(r.entity_id for r in await env.index.find(entity_type="Page")) == [1, 3]
        job = (await env.jobs.find())[0]
        assert job.status == JobStatus.FAILED
        assert job.processed_entities == 2
        assert job.failed_entities == 1
        assert "1 of 3" in job.error_message

    @pytest.mark.asyncio
    async def test_timeout_fails_job(self, cache):
        pages = SlowRepository(Page, delay=0.1)
        env = build(cache, pages=pages, timeout_seconds=0.05)
        await pages.add(make_page())

        assert await env.indexer.full_reindex() is False

        job = (await env.jobs.find())[0]
        assert job.status == JobStatus.FAILED
        assert job.error_message.startswith("Timed out")
        assert not env.indexer.is_full_reindex_running()

    @pytest.mark.asyncio
    async def test_parallel_mode(self, cache):
        env = build(cache, parallel=True, max_workers=3, batch_size=7)
        await seed_pages(env.pages, 20)

        assert await env.indexer.full_reindex() is True
        records = await env.index.find()
        assert len(records) == 20
        assert all(n == 1 for n in live_counts(records).values())


# ═══════════════ SINGLE ENTITY ═══════════════

class TestSingleEntity:
    @pytest.mark.asyncio
    async def test_index_entity_upserts(self, cache):
        env = build(cache)
        page = await env.pages.add(make_page(title="Pricing"))
        assert await env.indexer.index_entity("page", page.id) is True

        page.title = "Pricing Plans"
        page.touch()
        assert await env.indexer.index_entity("Page", page.id) is True

        records = await env.index.find()
        assert len(records) == 1
        assert records[0].title == "Pricing Plans"

    @pytest.mark.asyncio
    async def test_concurrent_index_of_same_entity(self, cache):
        env = build(cache)
        page = await env.pages.add(make_page())
        results = await asyncio.gather(*(env.indexer.index_entity("Page", page.id) for _ in range(10)))
        assert all(results)
        assert len(await env.index.find()) == 1

    @pytest.mark.asyncio
    async def test_missing_entity_tombstones_record(self, cache):
        env = build(cache)
        page = await env.pages.add(make_page())
        await env.indexer.index_entity("Page", page.id)
        await env.pages.soft_delete(page.id)

        assert await env.indexer.index_entity("Page", page.id) is False
        assert await env.index.find() == []

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, cache):
        env = build(cache)
        page = await env.pages.add(make_page())
        await env.indexer.index_entity("Page", page.id)

        assert await env.indexer.remove_from_index("Page", page.id) is True
        assert await env.indexer.remove_from_index("Page", page.id) is True
        assert await env.indexer.remove_from_index("Page", 999) is True
        assert await env.index.find() == []

    @pytest.mark.asyncio
    async def test_unknown_type(self, cache):
        env = build(cache)
        assert await env.indexer.index_entities("Invoice") is False
        assert await env.indexer.index_entity("Invoice", 1) is False

    @pytest.mark.asyncio
    async def test_index_entities_subset(self, cache):
        env = build(cache)
        await seed_pages(env.pages, 4)
        assert await env.indexer.index_entities("Page", [2, 4]) is True
        assert sorted(r.entity_id for r in await env.index.find()) == [2, 4]

    @pytest.mark.asyncio
    async def test_users_never_public(self, cache):
        env = build(cache)
        user = await env.users.add(make_user())
        await env.indexer.index_entity("User", user.id)
        record = (await env.index.find())[0]
        assert record.is_public is False


# ═══════════════ INCREMENTAL ═══════════════

class TestIncrementalIndex:
    @pytest.mark.asyncio
    async def test_changes_and_deletions(self, cache):
        env = build(cache)
        await seed_pages(env.pages, 3)
        assert await env.indexer.full_reindex() is True

        since = utcnow()
        await asyncio.sleep(0.001)
        page = await env.pages.get_by_id(1)
        page.title = "Renamed"
        page.touch()
        await env.pages.update(page)
        await env.pages.soft_delete(2)

        assert await env.indexer.incremental_index(since) is True

        records = {r.entity_id: r for r in await env.index.find(entity_type="Page")}
        assert sorted(records) == [1, 3]
        assert records[1].title == "Renamed"
        job = [j for j in await env.jobs.find() if j.job_type == JobType.INCREMENTAL][0]
        assert job.status == JobStatus.COMPLETED
        assert job.processed_entities == 1
        assert job.job_metadata["removed"] == 1

    @pytest.mark.asyncio
    async def test_refused_while_full_reindex_runs(self, cache):
        pages = GatedRepository(Page)
        env = build(cache, pages=pages)
        await pages.add(make_page())

        run = asyncio.create_task(env.indexer.full_reindex())
        await pages.reached.wait()
        assert await env.indexer.incremental_index() is False

        pages.gate.set()
        await run
        assert all(j.job_type == JobType.FULL for j in await env.jobs.find())


# ═══════════════ JOB BOOKKEEPING ═══════════════

class TestJobs:
    @pytest.mark.asyncio
    async def test_terminal_job_not_reopened(self, cache):
        env = build(cache)
        job = await env.indexer.create_job(JobType.FULL)
        assert job.status == JobStatus.PENDING
        assert await env.indexer.complete_job(job.id, True) is True
        assert await env.indexer.complete_job(job.id, False, "late failure") is False
        job = await env.jobs.get_by_id(job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.error_message is None

    @pytest.mark.asyncio
    async def test_update_missing_job(self, cache):
        env = build(cache)
        assert await env.indexer.update_job(42, JobStatus.RUNNING) is False


# ═══════════════ TEXT CLEANING ═══════════════

class TestCleanText:
    def test_script_and_style_bodies_dropped(self):
        text = "<p>Hello</p><script>var secret = 1;</script><style>p { color: red }</style><b>world</b>"
        assert clean_text(text) == "Hello world"

    def test_comparison_operators_survive(self):
        assert clean_text("Price 3 < 5 and 7 > 6 units") == "Price 3 < 5 and 7 > 6 units"
        assert clean_text("<p>3 < 5</p>") == "3 < 5"

    def test_entities_decoded(self):
        assert clean_text("Fish &amp; Chips&nbsp;&lt;fresh&gt;") == "Fish & Chips <fresh>"
        assert clean_text("<p>Caf&eacute;</p>") == "Café"

    def test_blank(self):
        assert clean_text(None) == ""
        assert clean_text("   ") == ""

    def test_script_text_not_searchable(self):
        content = extract_page(make_page(description="<script>tracking()</script>Who we are"))
        assert "tracking" not in content.search_vector
        assert "who" in content.search_vector.split(" ")


# ═══════════════ RECORD LOCKS ═══════════════

class TestRecordLockSweep:
    @pytest.mark.asyncio
    async def test_reindex_locks_swept(self, cache):
        env = build(cache, batch_size=10)
        await seed_pages(env.pages, 30)
        assert await env.indexer.full_reindex() is True
        assert len(env.indexer.record_locks) == 30

        assert env.indexer.sweep_record_locks(limit=20) == 20
        assert len(env.indexer.record_locks) == 10
        assert env.indexer.sweep_record_locks() == 10
        assert len(env.indexer.record_locks) == 0

    @pytest.mark.asyncio
    async def test_held_lock_survives_sweep(self, cache):
        env = build(cache)
        page = await env.pages.add(make_page())
        await env.indexer.index_entity("Page", page.id)
        async with env.indexer.record_locks.hold("Page:99"):
            assert env.indexer.sweep_record_locks() == 1
            assert "Page:99" in env.indexer.record_locks
        assert env.indexer.sweep_record_locks() == 1
