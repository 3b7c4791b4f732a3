"""Service wiring.

Builds every repository and service once per process. With a session
factory the repositories are SQL-backed; without one (database unreachable,
or `storage_backend=memory`) everything runs on the in-memory store.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cms_backend.config import settings
from cms_backend.models import (
    Company,
    ComponentTemplate,
    FileEntity,
    IndexingJob,
    Page,
    Product,
    ProductVariant,
    SearchIndex,
    User,
)
from cms_backend.repositories import MemoryRepository, Repository, SqlRepository
from cms_backend.search.extractors import (
    extract_component_template,
    extract_file,
    extract_page,
    extract_user,
)
from cms_backend.search.indexing import EntitySource, IndexingCoordinator
from cms_backend.search.query import SearchQueryEngine
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator
from cms_backend.services.company_service import CompanyService
from cms_backend.services.component_config import ComponentConfigValidator
from cms_backend.services.page_service import PageService
from cms_backend.services.product_service import ProductService
from cms_backend.services.upload import UploadCoordinator
from cms_backend.tasks import BackgroundTasksRunner

logger = logging.getLogger(__name__)

MODELS = (Company, ComponentTemplate, FileEntity, IndexingJob, Page, Product, ProductVariant, SearchIndex, User)


@dataclass
class ServiceContainer:
    cache: CacheService
    invalidation: CacheInvalidationCoordinator
    repositories: dict[type, Repository]
    indexer: IndexingCoordinator
    search: SearchQueryEngine
    uploads: UploadCoordinator
    companies: CompanyService
    products: ProductService
    pages: PageService
    component_config: ComponentConfigValidator
    tasks: BackgroundTasksRunner = field(default_factory=BackgroundTasksRunner)
    backend: str = "memory"

    def repository(self, model: type) -> Repository:
        return self.repositories[model]


def build_container(
    cache: CacheService,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    **indexing_options,
) -> ServiceContainer:
    if session_factory is not None:
        repositories = {model: SqlRepository(model, session_factory) for model in MODELS}
        backend = "sql"
    else:
        repositories = {model: MemoryRepository(model) for model in MODELS}
        backend = "memory"

    invalidation = CacheInvalidationCoordinator(cache)
    indexer = IndexingCoordinator(
        repositories[SearchIndex],
        repositories[IndexingJob],
        sources=[
            EntitySource("Page", repositories[Page], extract_page),
            EntitySource("File", repositories[FileEntity], extract_file),
            EntitySource("User", repositories[User], extract_user),
            EntitySource("ComponentTemplate", repositories[ComponentTemplate], extract_component_template),
        ],
        invalidation=invalidation,
        **indexing_options,
    )
    component_config = ComponentConfigValidator(repositories[ComponentTemplate])
    container = ServiceContainer(
        cache=cache,
        invalidation=invalidation,
        repositories=repositories,
        indexer=indexer,
        search=SearchQueryEngine(repositories[SearchIndex], repositories[IndexingJob], cache, indexer),
        uploads=UploadCoordinator(repositories[FileEntity], cache, invalidation),
        companies=CompanyService(repositories[Company], cache, invalidation),
        products=ProductService(
            repositories[Product], repositories[ProductVariant], cache, invalidation,
            files=repositories[FileEntity],
        ),
        pages=PageService(repositories[Page], cache, invalidation, indexer, component_config),
        component_config=component_config,
        backend=backend,
    )
    logger.info("Services wired | backend=%s", backend)
    return container


def register_background_tasks(container: ServiceContainer) -> BackgroundTasksRunner:
    runner = container.tasks
    runner.add(
        "hash-lock-sweep",
        settings.hash_lock_sweep_minutes * 60,
        container.uploads.sweep_hash_locks,
    )
    runner.add(
        "record-lock-sweep",
        settings.hash_lock_sweep_minutes * 60,
        container.indexer.sweep_record_locks,
    )
    runner.add("tombstone-purge", 3600, container.indexer.purge_tombstones)
    if settings.scheduled_indexing_enabled:
        runner.add(
            "incremental-index",
            settings.incremental_interval_minutes * 60,
            container.indexer.incremental_index,
        )
    return runner
