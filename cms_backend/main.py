"""CMS Backend — FastAPI application entry point.

Thin HTTP layer over the service container: search, indexing, company,
products, pages, files and cache administration.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from cms_backend.config import settings
from cms_backend.container import ServiceContainer, build_container, register_background_tasks
from cms_backend.errors import IntegrityError, NotFoundError, ServiceError, ValidationError
from cms_backend.search.schemas import SearchRequest
from cms_backend.services.company_service import CompanyUpdate
from cms_backend.services.page_service import PageCreate, PageUpdate
from cms_backend.services.product_service import ProductCreate, ProductImageCreate, ProductUpdate, VariantCreate
from cms_backend.services.upload import FileUpdate, FileUpload, UploadMetadata

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("cms_backend")


# ═══════════════ LIFESPAN ═══════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CMS backend starting | storage=%s", settings.storage_backend)

    # Initialize database (graceful degradation if unavailable)
    from cms_backend.database import close_db, get_session_factory, init_db
    session_factory = None
    if not settings.uses_memory_store:
        db_ok = await init_db()
        logger.info("Database: %s", "connected" if db_ok else "unavailable (using in-memory store)")
        if db_ok:
            session_factory = get_session_factory()

    # Initialize Redis cache (graceful degradation if unavailable)
    from cms_backend.services.cache import cache_service
    redis_ok = await cache_service.connect()
    logger.info("Redis: %s", "connected" if redis_ok else "unavailable (using in-memory fallback)")

    container = build_container(cache_service, session_factory)
    register_background_tasks(container).start()
    app.state.container = container

    yield

    await container.tasks.stop()
    await cache_service.disconnect()
    await close_db()
    logger.info("CMS backend shutting down")


# ═══════════════ APP ═══════════════

app = FastAPI(
    title="CMS Backend API",
    description="Multi-tenant content management backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


# ═══════════════ ERROR MAPPING ═══════════════

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(IntegrityError)
async def integrity_handler(request: Request, exc: IntegrityError):
    logger.error("Integrity failure | path=%s | %s", request.url.path, str(exc)[:300])
    return JSONResponse(status_code=500, content={"error": str(exc)})


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# ═══════════════ HEALTH ═══════════════

@app.get("/health")
async def health(container: ServiceContainer = Depends(get_container)):
    return {
        "status": "ok",
        "storage": container.backend,
        "cache": container.cache.get_statistics()["backend"],
        "background_tasks": container.tasks.is_running,
    }


# ═══════════════ SEARCH & INDEXING ═══════════════

@app.post("/api/search")
async def search(body: SearchRequest, container: ServiceContainer = Depends(get_container)):
    return await container.search.search(body)


@app.get("/api/search/suggest")
async def suggest(q: str = "", limit: int = 5, container: ServiceContainer = Depends(get_container)):
    return await container.search.suggest(q, limit)


@app.get("/api/search/status")
async def indexing_status(container: ServiceContainer = Depends(get_container)):
    return await container.search.get_indexing_status()


@app.post("/api/indexing/full")
async def full_reindex(background_tasks: BackgroundTasks, container: ServiceContainer = Depends(get_container)):
    if container.indexer.is_full_reindex_running():
        return JSONResponse(status_code=409, content={"error": "Full reindex already running"})
    background_tasks.add_task(container.indexer.full_reindex)
    return JSONResponse(status_code=202, content={"status": "accepted"})


class IncrementalIndexRequest(BaseModel):
    since: str | None = None


@app.post("/api/indexing/incremental")
async def incremental_index(
    body: IncrementalIndexRequest | None = None,
    container: ServiceContainer = Depends(get_container),
):
    since = None
    if body is not None and body.since:
        try:
            since = datetime.fromisoformat(body.since)
        except ValueError:
            raise ValidationError(f"Invalid timestamp '{body.since}'")
    return {"success": await container.indexer.incremental_index(since)}


@app.post("/api/indexing/{entity_type}/{entity_id}")
async def index_entity(entity_type: str, entity_id: int, container: ServiceContainer = Depends(get_container)):
    if container.indexer.source_for(entity_type) is None:
        raise NotFoundError("Entity type", entity_type)
    return {"success": await container.indexer.index_entity(entity_type, entity_id)}


@app.delete("/api/indexing/{entity_type}/{entity_id}")
async def remove_from_index(entity_type: str, entity_id: int, container: ServiceContainer = Depends(get_container)):
    return {"success": await container.indexer.remove_from_index(entity_type, entity_id)}


# ═══════════════ COMPANY ═══════════════

@app.get("/api/company")
async def get_company(container: ServiceContainer = Depends(get_container)):
    return await container.companies.get_company()


@app.put("/api/company")
async def update_company(body: CompanyUpdate, container: ServiceContainer = Depends(get_container)):
    return await container.companies.update_company(body)


@app.get("/api/company/{company_id}")
async def get_company_by_id(company_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.companies.get_by_id(company_id)


# ═══════════════ PRODUCTS ═══════════════

class ImageOrder(BaseModel):
    positions: dict[int, int]


@app.get("/api/products")
async def list_products(page: int = 1, page_size: int = 10, container: ServiceContainer = Depends(get_container)):
    return await container.products.get_paged(page, page_size)


@app.post("/api/products", status_code=201)
async def create_product(body: ProductCreate, container: ServiceContainer = Depends(get_container)):
    return await container.products.create(body)


@app.get("/api/products/slug/{slug}")
async def get_product_by_slug(slug: str, container: ServiceContainer = Depends(get_container)):
    return await container.products.get_by_slug(slug)


@app.get("/api/products/{product_id}")
async def get_product(product_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.products.get_by_id(product_id)


@app.put("/api/products/{product_id}")
async def update_product(product_id: int, body: ProductUpdate, container: ServiceContainer = Depends(get_container)):
    return await container.products.update(product_id, body)


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: int, container: ServiceContainer = Depends(get_container)):
    return {"success": await container.products.delete(product_id)}


@app.post("/api/products/{product_id}/restore")
async def restore_product(product_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.products.restore(product_id)


@app.post("/api/products/{product_id}/images", status_code=201)
async def add_product_image(
    product_id: int, body: ProductImageCreate, container: ServiceContainer = Depends(get_container),
):
    return await container.products.add_image(product_id, body)


@app.put("/api/products/{product_id}/images/order")
async def reorder_product_images(
    product_id: int, body: ImageOrder, container: ServiceContainer = Depends(get_container),
):
    return await container.products.reorder_images(product_id, body.positions)


@app.get("/api/products/{product_id}/variants")
async def list_variants(product_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.products.get_variants(product_id)


@app.post("/api/products/{product_id}/variants", status_code=201)
async def add_variant(product_id: int, body: VariantCreate, container: ServiceContainer = Depends(get_container)):
    return await container.products.add_variant(product_id, body)


# ═══════════════ PAGES & COMPONENTS ═══════════════

class PageStructure(BaseModel):
    components: list[dict]


@app.post("/api/pages", status_code=201)
async def create_page(body: PageCreate, container: ServiceContainer = Depends(get_container)):
    return await container.pages.create(body)


@app.get("/api/pages/slug/{slug}")
async def get_page_by_slug(slug: str, container: ServiceContainer = Depends(get_container)):
    return await container.pages.get_by_slug(slug)


@app.get("/api/pages/{page_id}")
async def get_page(page_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.pages.get_by_id(page_id)


@app.put("/api/pages/{page_id}")
async def update_page(page_id: int, body: PageUpdate, container: ServiceContainer = Depends(get_container)):
    return await container.pages.update(page_id, body)


@app.put("/api/pages/{page_id}/structure")
async def save_page_structure(
    page_id: int, body: PageStructure, container: ServiceContainer = Depends(get_container),
):
    return await container.pages.save_structure(page_id, body.components)


@app.delete("/api/pages/{page_id}")
async def delete_page(page_id: int, container: ServiceContainer = Depends(get_container)):
    return {"success": await container.pages.delete(page_id)}


@app.get("/api/components/{component_type}/defaults")
async def component_defaults(component_type: str, container: ServiceContainer = Depends(get_container)):
    return container.component_config.get_default_config(component_type)


@app.post("/api/components/{component_type}/validate")
async def validate_component(
    component_type: str, config: dict, container: ServiceContainer = Depends(get_container),
):
    result = container.component_config.validate(component_type, config)
    return {"is_valid": result.is_valid, "errors": result.errors, "sanitized": result.sanitized}


# ═══════════════ FILES ═══════════════

@app.post("/api/files", status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    description: str | None = Form(None),
    alt: str | None = Form(None),
    is_public: bool = Form(True),
    folder_id: int | None = Form(None),
    process_immediately: bool = Form(False),
    container: ServiceContainer = Depends(get_container),
):
    content = await file.read()
    metadata = UploadMetadata(
        description=description,
        alt=alt,
        is_public=is_public,
        folder_id=folder_id,
        process_immediately=process_immediately,
    )
    return await container.uploads.upload(
        content,
        file.filename or "upload",
        file.content_type or "application/octet-stream",
        metadata,
        declared_size=file.size,
    )


@app.post("/api/files/batch")
async def upload_files(
    files: list[UploadFile] = File(...),
    is_public: bool = Form(True),
    folder_id: int | None = Form(None),
    process_immediately: bool = Form(False),
    parallel: bool = Form(False),
    container: ServiceContainer = Depends(get_container),
):
    metadata = UploadMetadata(is_public=is_public, folder_id=folder_id, process_immediately=process_immediately)
    items = [
        FileUpload(
            content=await f.read(),
            file_name=f.filename or "upload",
            content_type=f.content_type or "application/octet-stream",
            declared_size=f.size,
            metadata=metadata,
        )
        for f in files
    ]
    return await container.uploads.upload_many(items, parallel=parallel)


@app.get("/api/files")
async def list_files(
    page: int = 1,
    page_size: int = 20,
    folder_id: int | None = None,
    container: ServiceContainer = Depends(get_container),
):
    return await container.uploads.get_files_paged(page, page_size, folder_id)


@app.get("/api/files/{file_id}")
async def get_file(file_id: int, container: ServiceContainer = Depends(get_container)):
    return await container.uploads.get_file(file_id)


@app.get("/api/files/{file_id}/download")
async def download_file(file_id: int, container: ServiceContainer = Depends(get_container)):
    content, content_type, file_name = await container.uploads.get_file_content(file_id)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@app.put("/api/files/{file_id}")
async def update_file(file_id: int, body: FileUpdate, container: ServiceContainer = Depends(get_container)):
    return await container.uploads.update_file(file_id, body)


@app.delete("/api/files/{file_id}")
async def delete_file(file_id: int, container: ServiceContainer = Depends(get_container)):
    return {"success": await container.uploads.delete_file(file_id)}


@app.post("/api/files/{file_id}/thumbnail")
async def generate_thumbnail(file_id: int, container: ServiceContainer = Depends(get_container)):
    return {"success": await container.uploads.generate_thumbnail(file_id)}


# ═══════════════ CACHE ═══════════════

class CacheInvalidateRequest(BaseModel):
    entity_type: str | None = None
    entity_id: int | None = None
    search: bool = False
    search_term: str | None = None
    everything: bool = False


@app.get("/api/cache/statistics")
async def cache_statistics(container: ServiceContainer = Depends(get_container)):
    return container.cache.get_statistics()


@app.post("/api/cache/invalidate")
async def invalidate_cache(body: CacheInvalidateRequest, container: ServiceContainer = Depends(get_container)):
    invalidation = container.invalidation
    if body.everything:
        ok = await invalidation.invalidate_all()
    elif body.search:
        ok = await invalidation.invalidate_search(body.search_term)
    elif body.entity_type and body.entity_id is not None:
        ok = await invalidation.invalidate_entity(body.entity_type, body.entity_id)
    elif body.entity_type:
        ok = await invalidation.invalidate_entity_type(body.entity_type)
    else:
        raise ValidationError("Nothing to invalidate")
    return {"success": ok}
