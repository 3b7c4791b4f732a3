"""Tests for cache invalidation — entity, type, search and failure reporting."""

import pytest

from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import (
    CacheInvalidationCoordinator,
    InvalidationRequest,
    InvalidationRule,
)


async def seed(cache, *keys):
    for key in keys:
        await cache.set(key, {"key": key}, ttl=600)


async def present(cache, *keys):
    return [key for key in keys if await cache.get(key) is not None]


class RemovalFailingCache(CacheService):
    async def remove(self, key):
        raise ConnectionError("redis down")

    async def remove_by_pattern(self, pattern):
        raise ConnectionError("redis down")


# ═══════════════ ENTITY ═══════════════

class TestInvalidateEntity:
    @pytest.mark.asyncio
    async def test_product_entity(self, cache, invalidation):
        await seed(
            cache,
            cache_keys.product(1), cache_keys.product(2),
            cache_keys.product_variants(1), cache_keys.product_list(1, 10),
            cache_keys.page(1),
        )
        assert await invalidation.invalidate_entity("product", 1) is True
        assert await present(
            cache,
            cache_keys.product(1), cache_keys.product(2),
            cache_keys.product_variants(1), cache_keys.product_list(1, 10),
            cache_keys.page(1),
        ) == [cache_keys.product(2), cache_keys.page(1)]

    @pytest.mark.asyncio
    async def test_company_drops_main_key(self, cache, invalidation):
        await seed(cache, cache_keys.COMPANY_MAIN, cache_keys.company(1))
        await invalidation.invalidate_entity("company", 1)
        assert await present(cache, cache_keys.COMPANY_MAIN, cache_keys.company(1)) == []

    @pytest.mark.asyncio
    async def test_type_name_case_insensitive(self, cache, invalidation):
        await seed(cache, cache_keys.page(4))
        await invalidation.invalidate_entity("Page", 4)
        assert await cache.get(cache_keys.page(4)) is None

    @pytest.mark.asyncio
    async def test_unknown_type_uses_lowercased_prefix(self, cache, invalidation):
        await seed(cache, "widget:id:3", "widget:id:4")
        await invalidation.invalidate_entity("Widget", 3)
        assert await present(cache, "widget:id:3", "widget:id:4") == ["widget:id:4"]


# ═══════════════ TYPE ═══════════════

class TestInvalidateEntityType:
    @pytest.mark.asyncio
    async def test_product_type_cascades_to_variants(self, cache, invalidation):
        await seed(
            cache,
            cache_keys.product(1), cache_keys.product_list(1, 10),
            cache_keys.product_variants(1), "variant:id:9",
            cache_keys.file(1),
        )
        assert await invalidation.invalidate_entity_type("product") is True
        assert await present(
            cache,
            cache_keys.product(1), cache_keys.product_list(1, 10),
            cache_keys.product_variants(1), "variant:id:9",
            cache_keys.file(1),
        ) == [cache_keys.file(1)]

    @pytest.mark.asyncio
    async def test_file_type_drops_lists_and_aggregates(self, cache, invalidation):
        await seed(cache, cache_keys.file_list(1, 20), cache_keys.FILE_RECENT, cache_keys.FILE_STATISTICS)
        await invalidation.invalidate_entity_type("file")
        assert await present(
            cache, cache_keys.file_list(1, 20), cache_keys.FILE_RECENT, cache_keys.FILE_STATISTICS,
        ) == []

    @pytest.mark.asyncio
    async def test_registered_rule(self, cache, invalidation):
        invalidation.register("Menu", InvalidationRule(prefix="menu", keys=("navigation:main",)))
        await seed(cache, "menu:id:1", "navigation:main")
        await invalidation.invalidate_entity_type("menu")
        assert await present(cache, "menu:id:1", "navigation:main") == []


# ═══════════════ SEARCH ═══════════════

class TestInvalidateSearch:
    @pytest.mark.asyncio
    async def test_all_search_entries(self, cache, invalidation):
        await seed(
            cache,
            "search:results:abc", cache_keys.INDEXING_STATUS,
            cache_keys.suggestions("pricing", 5), cache_keys.page(1),
        )
        await invalidation.invalidate_search()
        assert await present(
            cache,
            "search:results:abc", cache_keys.INDEXING_STATUS,
            cache_keys.suggestions("pricing", 5), cache_keys.page(1),
        ) == [cache_keys.page(1)]

    @pytest.mark.asyncio
    async def test_term_narrows_suggestions_only(self, cache, invalidation):
        await seed(
            cache,
            "search:results:abc",
            cache_keys.suggestions("pricing", 5),
            cache_keys.suggestions("about", 5),
        )
        await invalidation.invalidate_search("Pricing")
        assert await present(
            cache,
            "search:results:abc",
            cache_keys.suggestions("pricing", 5),
            cache_keys.suggestions("about", 5),
        ) == [cache_keys.suggestions("about", 5)]


# ═══════════════ BULK ═══════════════

class TestBulk:
    @pytest.mark.asyncio
    async def test_invalidate_many(self, cache, invalidation):
        await seed(cache, cache_keys.page(1), cache_keys.file(2), cache_keys.file_list(1, 20))
        ok = await invalidation.invalidate_many([
            InvalidationRequest("page", 1),
            InvalidationRequest("file"),
        ])
        assert ok is True
        assert await present(cache, cache_keys.page(1), cache_keys.file(2), cache_keys.file_list(1, 20)) == []

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache, invalidation):
        await seed(cache, cache_keys.page(1), cache_keys.COMPANY_MAIN, "search:results:x")
        assert await invalidation.invalidate_all() is True
        assert cache.get_statistics()["memory_items"] == 0


# ═══════════════ FAILURES ═══════════════

class TestFailureReporting:
    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self):
        coordinator = CacheInvalidationCoordinator(RemovalFailingCache())
        assert await coordinator.invalidate_entity("product", 1) is False
        assert await coordinator.invalidate_entity_type("file") is False
        assert await coordinator.invalidate_search() is False
        assert await coordinator.invalidate_all() is False
