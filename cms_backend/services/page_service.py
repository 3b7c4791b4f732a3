"""Page service — page CRUD and component-structure saves.

Saved pages are pushed to the search index straight away; a failed index
update is logged and left for the next incremental run.
"""

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from cms_backend.errors import NotFoundError, ValidationError
from cms_backend.models import Page
from cms_backend.repositories import Repository
from cms_backend.search.indexing import IndexingCoordinator
from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator
from cms_backend.services.component_config import ComponentConfigValidator

logger = logging.getLogger(__name__)

PAGE_STATUSES = ("Draft", "Published", "Archived")


class PageDto(BaseModel):
    id: int
    name: str
    title: str
    slug: str
    description: str | None = None
    meta_keywords: str | None = None
    status: str = "Draft"
    requires_login: bool = False
    admin_only: bool = False
    parent_page_id: int | None = None
    components: list = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, page: Page) -> "PageDto":
        return cls(
            id=page.id,
            name=page.name,
            title=page.title,
            slug=page.slug,
            description=page.description,
            meta_keywords=page.meta_keywords,
            status=page.status,
            requires_login=page.requires_login,
            admin_only=page.admin_only,
            parent_page_id=page.parent_page_id,
            components=page.components or [],
            created_at=page.created_at,
            updated_at=page.updated_at,
        )


class PageCreate(BaseModel):
    name: str
    title: str
    slug: str
    description: str | None = None
    meta_keywords: str | None = None
    status: str = "Draft"
    requires_login: bool = False
    admin_only: bool = False
    parent_page_id: int | None = None


class PageUpdate(BaseModel):
    name: str | None = None
    title: str | None = None
    slug: str | None = None
    description: str | None = None
    meta_keywords: str | None = None
    status: str | None = None
    requires_login: bool | None = None
    admin_only: bool | None = None
    parent_page_id: int | None = None


class PageService:

    def __init__(
        self,
        repository: Repository[Page],
        cache: CacheService,
        invalidation: CacheInvalidationCoordinator,
        indexer: IndexingCoordinator | None = None,
        validator: ComponentConfigValidator | None = None,
    ):
        self.repository = repository
        self.cache = cache
        self.invalidation = invalidation
        self.indexer = indexer
        self.validator = validator or ComponentConfigValidator()

    async def _require(self, page_id: int) -> Page:
        page = await self.repository.get_by_id(page_id)
        if page is None:
            raise NotFoundError("Page", page_id)
        return page

    async def _ensure_unique_slug(self, slug: str, exclude_id: int | None = None):
        existing = await self.repository.first(slug=slug)
        if existing is not None and existing.id != exclude_id:
            raise ValidationError(f"Page with slug '{slug}' already exists")

    @staticmethod
    def _check_status(status: str | None):
        if status is not None and status not in PAGE_STATUSES:
            raise ValidationError(f"Invalid page status '{status}'")

    async def _after_write(self, page_id: int, removed: bool = False):
        await self.invalidation.invalidate_entity("page", page_id)
        await self.invalidation.invalidate_entity_type("page")
        if self.indexer is None:
            return
        if removed:
            await self.indexer.remove_from_index("Page", page_id)
        elif not await self.indexer.index_entity("Page", page_id):
            logger.warning("Page index update failed | id=%d", page_id)

    async def get_by_id(self, page_id: int) -> PageDto:
        async def produce():
            page = await self.repository.get_by_id(page_id)
            return PageDto.from_entity(page).model_dump(mode="json") if page else None

        data = await self.cache.get_or_add(cache_keys.page(page_id), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("Page", page_id)
        return PageDto.model_validate(data)

    async def get_by_slug(self, slug: str) -> PageDto:
        async def produce():
            page = await self.repository.first(slug=slug)
            return PageDto.from_entity(page).model_dump(mode="json") if page else None

        data = await self.cache.get_or_add(cache_keys.page_by_slug(slug), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("Page", slug)
        return PageDto.model_validate(data)

    async def create(self, data: PageCreate) -> PageDto:
        self._check_status(data.status)
        await self._ensure_unique_slug(data.slug)
        page = await self.repository.add(Page(
            name=data.name,
            title=data.title,
            slug=data.slug,
            description=data.description,
            meta_keywords=data.meta_keywords,
            status=data.status,
            requires_login=data.requires_login,
            admin_only=data.admin_only,
            parent_page_id=data.parent_page_id,
            components=[],
        ))
        await self._after_write(page.id)
        logger.info("Page created | id=%d | slug=%s", page.id, page.slug)
        return PageDto.from_entity(page)

    async def update(self, page_id: int, changes: PageUpdate) -> PageDto:
        page = await self._require(page_id)
        values = changes.model_dump(exclude_unset=True)
        self._check_status(values.get("status"))
        if values.get("slug") and values["slug"] != page.slug:
            await self._ensure_unique_slug(values["slug"], exclude_id=page_id)
        for field_name, value in values.items():
            if value is not None or field_name == "parent_page_id":
                setattr(page, field_name, value)
        page.touch()
        page = await self.repository.update(page)
        await self._after_write(page_id)
        return PageDto.from_entity(page)

    def _validate_components(self, components: list) -> tuple[list, list[str]]:
        """Validate and sanitize every node's `properties`, walking the tree iteratively."""
        errors: list[str] = []
        cleaned = [dict(node) for node in components if isinstance(node, dict)]
        stack = [(node, node.get("name") or node.get("type") or "component") for node in cleaned]
        while stack:
            node, path = stack.pop()
            component_type = node.get("type")
            if component_type:
                result = self.validator.validate(component_type, node.get("properties") or {})
                if result.is_valid:
                    node["properties"] = result.sanitized
                else:
                    errors.extend(f"{path}: {e}" for e in result.errors)
            children = [dict(child) for child in node.get("children") or [] if isinstance(child, dict)]
            node["children"] = children
            stack.extend((child, f"{path}/{child.get('name') or child.get('type') or 'component'}") for child in children)
        return cleaned, errors

    async def save_structure(self, page_id: int, components: list) -> PageDto:
        """Replace the page's component tree after validating every node's config."""
        page = await self._require(page_id)
        cleaned, errors = self._validate_components(components)
        if errors:
            raise ValidationError("; ".join(errors))
        page.components = cleaned
        page.touch()
        page = await self.repository.update(page)
        await self._after_write(page_id)
        logger.info("Page structure saved | id=%d | components=%d", page_id, len(cleaned))
        return PageDto.from_entity(page)

    async def delete(self, page_id: int) -> bool:
        if not await self.repository.soft_delete(page_id):
            raise NotFoundError("Page", page_id)
        await self._after_write(page_id, removed=True)
        logger.info("Page deleted | id=%d", page_id)
        return True
