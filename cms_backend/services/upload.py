"""Upload coordinator — validated, de-duplicated, bounded file uploads.

Flow per upload:
  reject empty → classify → validate → global permit → length check
  → SHA-256 → per-hash lock → duplicate check → type validation
  → persist → persisted-length check → optional post-processing

Byte-identical content is stored once: concurrent uploads of the same bytes
serialize on the per-hash lock and all but the first return the stored record.
"""

import asyncio
import base64
import gzip
import hashlib
import io
import logging
import tarfile
import uuid
import zipfile
import zlib
from datetime import datetime

from pydantic import BaseModel, Field

from cms_backend.config import settings
from cms_backend.errors import IntegrityError, NotFoundError, ServiceError, ValidationError
from cms_backend.models import FileEntity, FileType
from cms_backend.repositories import Repository
from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator
from cms_backend.services.file_validation import FileValidationService, get_extension
from cms_backend.services.image_processing import ImageProcessingService
from cms_backend.services.keyed_lock import KeyedLockRegistry

logger = logging.getLogger(__name__)


# ═══════════════ DTOs ═══════════════

class UploadMetadata(BaseModel):
    description: str | None = None
    alt: str | None = None
    is_public: bool = True
    folder_id: int | None = None
    tags: dict = Field(default_factory=dict)
    process_immediately: bool = False


class FileUpload(BaseModel):
    """One file of a batch upload."""
    content: bytes
    file_name: str
    content_type: str
    declared_size: int | None = None
    metadata: UploadMetadata = Field(default_factory=UploadMetadata)


class FileUpdate(BaseModel):
    description: str | None = None
    alt: str | None = None
    is_public: bool | None = None
    folder_id: int | None = None
    tags: dict | None = None


class FileRecord(BaseModel):
    id: int
    original_file_name: str
    stored_file_name: str
    content_type: str
    file_size: int
    file_extension: str = ""
    file_type: str
    hash: str
    description: str | None = None
    alt: str | None = None
    is_public: bool = True
    folder_id: int | None = None
    tags: dict = Field(default_factory=dict)
    width: int | None = None
    height: int | None = None
    is_processed: bool = False
    processing_status: str = "Pending"
    has_thumbnail: bool = False
    download_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_duplicate: bool = False

    @classmethod
    def from_entity(cls, entity: FileEntity, is_duplicate: bool = False) -> "FileRecord":
        return cls(
            id=entity.id,
            original_file_name=entity.original_file_name,
            stored_file_name=entity.stored_file_name,
            content_type=entity.content_type,
            file_size=entity.file_size,
            file_extension=entity.file_extension or "",
            file_type=entity.file_type,
            hash=entity.hash,
            description=entity.description,
            alt=entity.alt,
            is_public=entity.is_public,
            folder_id=entity.folder_id,
            tags=entity.tags or {},
            width=entity.width,
            height=entity.height,
            is_processed=entity.is_processed,
            processing_status=entity.processing_status,
            has_thumbnail=entity.thumbnail_content is not None,
            download_count=entity.download_count or 0,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            is_duplicate=is_duplicate,
        )


class UploadFailure(BaseModel):
    file_name: str
    error: str


class BatchUploadResult(BaseModel):
    succeeded: list[FileRecord] = Field(default_factory=list)
    failures: list[UploadFailure] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0


class FilePage(BaseModel):
    items: list[FileRecord] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20


# ═══════════════ TYPE HANDLERS ═══════════════

class FileTypeHandler:
    """Type-specific hooks. The base handler accepts anything and does nothing."""

    file_type: FileType = FileType.OTHER

    async def validate_content(self, content: bytes, file_name: str) -> list[str]:
        return []

    async def apply_properties(self, entity: FileEntity, content: bytes):
        pass

    async def post_process(self, entity: FileEntity) -> bool:
        """Returns True when there was something to do."""
        return False


class ImageFileHandler(FileTypeHandler):
    file_type = FileType.IMAGE

    def __init__(self, images: ImageProcessingService):
        self.images = images

    async def validate_content(self, content: bytes, file_name: str) -> list[str]:
        if get_extension(file_name) == ".svg":
            return []
        if not await self.images.is_image(content):
            return ["File content is not a valid image"]
        return []

    async def apply_properties(self, entity: FileEntity, content: bytes):
        if entity.file_extension == ".svg":
            return
        entity.width, entity.height = await self.images.get_dimensions(content)

    async def post_process(self, entity: FileEntity) -> bool:
        if entity.file_extension == ".svg":
            return False
        entity.thumbnail_content = await self.images.generate_thumbnail(entity.file_content)
        return True


ZIP_EXTENSIONS = {".zip"}
TAR_EXTENSIONS = {".tar"}
OOXML_EXTENSIONS = {".docx", ".xlsx", ".pptx"}


def _zip_listing(content: bytes) -> tuple[int, int]:
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        bad = archive.testzip()
        if bad is not None:
            raise zipfile.BadZipFile(f"CRC mismatch in {bad}")
        members = archive.infolist()
        return len(members), sum(m.file_size for m in members)


def _tar_listing(content: bytes) -> tuple[int, int]:
    with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as archive:
        members = archive.getmembers()
        return len(members), sum(m.size for m in members if m.isfile())


def _gzip_listing(content: bytes) -> tuple[int, int]:
    try:
        return _tar_listing(content)
    except tarfile.ReadError:
        # plain gzip stream of a single file
        return 1, len(gzip.decompress(content))


class ArchiveFileHandler(FileTypeHandler):
    """Zip and tar archives must open cleanly; entry count and size land in tags."""

    file_type = FileType.ARCHIVE

    @staticmethod
    async def inspect(content: bytes, extension: str) -> tuple[int, int] | None:
        if extension in ZIP_EXTENSIONS:
            return await asyncio.to_thread(_zip_listing, content)
        if extension in TAR_EXTENSIONS:
            return await asyncio.to_thread(_tar_listing, content)
        if extension == ".gz":
            return await asyncio.to_thread(_gzip_listing, content)
        return None

    async def validate_content(self, content: bytes, file_name: str) -> list[str]:
        try:
            await self.inspect(content, get_extension(file_name))
        except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError, OSError) as e:
            logger.warning("Corrupt archive rejected | file=%s | error=%s", file_name, e)
            return [f"Archive {file_name} is corrupt or unreadable"]
        return []

    async def apply_properties(self, entity: FileEntity, content: bytes):
        listing = await self.inspect(content, entity.file_extension)
        if listing is None:
            return
        entry_count, uncompressed_size = listing
        entity.tags = {
            **(entity.tags or {}),
            "entry_count": entry_count,
            "uncompressed_size": uncompressed_size,
        }


def _ooxml_has_content_types(content: bytes) -> bool:
    with zipfile.ZipFile(io.BytesIO(content)) as package:
        return "[Content_Types].xml" in package.namelist()


class DocumentFileHandler(FileTypeHandler):
    """Structural checks for PDF and Office Open XML documents."""

    file_type = FileType.DOCUMENT

    async def validate_content(self, content: bytes, file_name: str) -> list[str]:
        extension = get_extension(file_name)
        if extension == ".pdf":
            if not content.startswith(b"%PDF-") or b"%%EOF" not in content[-1024:]:
                return [f"Document {file_name} is not a complete PDF"]
            return []
        if extension in OOXML_EXTENSIONS:
            try:
                ok = await asyncio.to_thread(_ooxml_has_content_types, content)
            except zipfile.BadZipFile:
                ok = False
            if not ok:
                return [f"Document {file_name} is not a valid Office Open XML package"]
        return []


def content_hash(content: bytes) -> str:
    return base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")


# ═══════════════ COORDINATOR ═══════════════

class UploadCoordinator:

    def __init__(
        self,
        repository: Repository[FileEntity],
        cache: CacheService,
        invalidation: CacheInvalidationCoordinator,
        validator: FileValidationService | None = None,
        images: ImageProcessingService | None = None,
        expected_type: FileType | None = None,
        max_concurrent_uploads: int | None = None,
        hash_locks: KeyedLockRegistry | None = None,
    ):
        self.repository = repository
        self.cache = cache
        self.invalidation = invalidation
        self.validator = validator or FileValidationService()
        self.images = images or ImageProcessingService()
        self.expected_type = expected_type
        self.max_concurrent_uploads = max(1, max_concurrent_uploads or settings.max_concurrent_uploads)
        self._permits = asyncio.Semaphore(self.max_concurrent_uploads)
        self.hash_locks = hash_locks or KeyedLockRegistry("upload-hash")
        self._handlers: dict[FileType, FileTypeHandler] = {
            FileType.IMAGE: ImageFileHandler(self.images),
            FileType.ARCHIVE: ArchiveFileHandler(),
            FileType.DOCUMENT: DocumentFileHandler(),
        }
        self._default_handler = FileTypeHandler()

    def register_handler(self, handler: FileTypeHandler):
        self._handlers[handler.file_type] = handler

    def handler_for(self, file_type: FileType | str) -> FileTypeHandler:
        return self._handlers.get(FileType(file_type), self._default_handler)

    async def upload(
        self,
        content: bytes,
        file_name: str,
        content_type: str,
        metadata: UploadMetadata | None = None,
        declared_size: int | None = None,
    ) -> FileRecord:
        metadata = metadata or UploadMetadata()
        if not content:
            raise ValidationError("File is empty")

        file_type = self.validator.get_file_type(file_name, content_type)
        if self.expected_type is not None and file_type != self.expected_type:
            raise ValidationError(
                f"File {file_name} is {file_type.value}, expected {self.expected_type.value}"
            )

        errors = self.validator.validate(content, file_name, content_type)
        if errors:
            raise ValidationError("; ".join(errors))

        async with self._permits:
            data = bytes(content)
            expected_size = len(content) if declared_size is None else declared_size
            if len(data) != expected_size:
                raise IntegrityError(
                    f"Read {len(data)} bytes of {file_name}, expected {expected_size}"
                )

            file_hash = content_hash(data)
            async with self.hash_locks.hold(file_hash):
                existing = await self.repository.first(hash=file_hash)
                if existing is not None:
                    logger.info(
                        "Duplicate upload detected | file=%s | existing_id=%d", file_name, existing.id,
                    )
                    return FileRecord.from_entity(existing, is_duplicate=True)

                handler = self.handler_for(file_type)
                errors = await handler.validate_content(data, file_name)
                if errors:
                    raise ValidationError("; ".join(errors))

                extension = get_extension(file_name)
                entity = FileEntity(
                    original_file_name=file_name,
                    stored_file_name=f"{uuid.uuid4().hex}{extension}",
                    content_type=content_type,
                    file_size=len(data),
                    file_extension=extension,
                    file_type=file_type.value,
                    file_content=data,
                    hash=file_hash,
                    description=metadata.description,
                    alt=metadata.alt,
                    is_public=metadata.is_public,
                    folder_id=metadata.folder_id,
                    tags=dict(metadata.tags),
                    is_processed=False,
                    processing_status="Pending",
                    download_count=0,
                )
                await handler.apply_properties(entity, data)
                saved = await self.repository.add(entity)

                if len(saved.file_content or b"") != len(data):
                    await self.repository.delete(saved.id)
                    raise IntegrityError(
                        f"Stored {len(saved.file_content or b'')} bytes of {file_name}, expected {len(data)}"
                    )

                if metadata.process_immediately:
                    saved = await self._post_process(handler, saved)

        await self.invalidation.invalidate_entity_type("file")
        logger.info(
            "File uploaded | id=%d | file=%s | type=%s | size=%d",
            saved.id, file_name, file_type.value, saved.file_size,
        )
        return FileRecord.from_entity(saved)

    async def _post_process(self, handler: FileTypeHandler, entity: FileEntity) -> FileEntity:
        """Processing failures mark the file Failed; the upload itself stands."""
        try:
            processed = await handler.post_process(entity)
            entity.is_processed = True
            entity.processing_status = "Completed" if processed else "Skipped"
        except Exception as e:
            entity.processing_status = "Failed"
            logger.warning("Post-processing failed | id=%d | %s", entity.id, str(e)[:200])
        entity.touch()
        return await self.repository.update(entity)

    async def _upload_one(self, item: FileUpload, result: BatchUploadResult):
        try:
            record = await self.upload(
                item.content, item.file_name, item.content_type, item.metadata, item.declared_size,
            )
            result.succeeded.append(record)
        except ServiceError as e:
            result.failures.append(UploadFailure(file_name=item.file_name, error=str(e)))
            logger.warning("Batch upload item rejected | file=%s | %s", item.file_name, str(e)[:200])
        except Exception as e:
            result.failures.append(UploadFailure(file_name=item.file_name, error=str(e)[:500]))
            logger.error("Batch upload item failed | file=%s | %s", item.file_name, str(e)[:200])

    async def upload_many(self, files: list[FileUpload], parallel: bool = False) -> BatchUploadResult:
        """Upload every file; failures are collected, never abort the batch."""
        result = BatchUploadResult()
        if parallel:
            workers = asyncio.Semaphore(max(1, min(self.max_concurrent_uploads, len(files))))

            async def worker(item: FileUpload):
                async with workers:
                    await self._upload_one(item, result)

            await asyncio.gather(*(worker(f) for f in files))
        else:
            for item in files:
                await self._upload_one(item, result)

        result.success_count = len(result.succeeded)
        result.failure_count = len(result.failures)
        logger.info(
            "Batch upload finished | succeeded=%d | failed=%d",
            result.success_count, result.failure_count,
        )
        return result

    # ═══════════════ READS & EDITS ═══════════════

    async def _require(self, file_id: int) -> FileEntity:
        entity = await self.repository.get_by_id(file_id)
        if entity is None:
            raise NotFoundError("File", file_id)
        return entity

    async def get_file(self, file_id: int) -> FileRecord:
        async def produce():
            entity = await self.repository.get_by_id(file_id)
            return FileRecord.from_entity(entity).model_dump(mode="json") if entity else None

        data = await self.cache.get_or_add(cache_keys.file(file_id), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("File", file_id)
        return FileRecord.model_validate(data)

    async def get_file_content(self, file_id: int) -> tuple[bytes, str, str]:
        """Raw bytes, content type and original name; counts the download."""
        entity = await self._require(file_id)
        entity.download_count = (entity.download_count or 0) + 1
        entity = await self.repository.update(entity)
        await self.invalidation.invalidate_entity("file", file_id)
        return entity.file_content, entity.content_type, entity.original_file_name

    async def get_files_paged(self, page: int = 1, page_size: int = 20, folder_id: int | None = None) -> FilePage:
        page = max(1, page)
        page_size = max(1, min(page_size, settings.search_max_page_size))
        key = cache_keys.file_list(page, page_size, folder_id)

        async def produce():
            equals = {"folder_id": folder_id} if folder_id is not None else {}
            items, total = await self.repository.page((page - 1) * page_size, page_size, **equals)
            return FilePage(
                items=[FileRecord.from_entity(e) for e in items],
                total=total, page=page, page_size=page_size,
            ).model_dump(mode="json")

        return FilePage.model_validate(await self.cache.get_or_add(key, produce, self.cache.get_ttl("list")))

    async def update_file(self, file_id: int, changes: FileUpdate) -> FileRecord:
        entity = await self._require(file_id)
        for field_name, value in changes.model_dump(exclude_unset=True).items():
            setattr(entity, field_name, value)
        entity.touch()
        entity = await self.repository.update(entity)
        await self.invalidation.invalidate_entity("file", file_id)
        await self.invalidation.invalidate_entity_type("file")
        return FileRecord.from_entity(entity)

    async def delete_file(self, file_id: int) -> bool:
        if not await self.repository.soft_delete(file_id):
            raise NotFoundError("File", file_id)
        await self.invalidation.invalidate_entity("file", file_id)
        await self.invalidation.invalidate_entity_type("file")
        logger.info("File deleted | id=%d", file_id)
        return True

    async def generate_thumbnail(self, file_id: int) -> bool:
        entity = await self._require(file_id)
        if entity.file_type != FileType.IMAGE.value:
            raise ValidationError(f"File {file_id} is not an image")
        entity = await self._post_process(self.handler_for(entity.file_type), entity)
        await self.invalidation.invalidate_entity("file", file_id)
        return entity.processing_status == "Completed"

    def sweep_hash_locks(self, limit: int | None = None) -> int:
        return self.hash_locks.sweep(limit or settings.hash_lock_sweep_limit)
