"""Product catalog service — products, their images and variants.

Slugs and SKUs are unique; collisions are rejected as validation errors.
Every write invalidates the product caches after the repository commit.
"""

import logging
import re
from datetime import datetime

from pydantic import BaseModel, Field

from cms_backend.errors import NotFoundError, ValidationError
from cms_backend.models import FileEntity, FileType, Product, ProductVariant
from cms_backend.models.base import as_utc
from cms_backend.repositories import Repository
from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator

logger = logging.getLogger(__name__)


# ═══════════════ DTOs ═══════════════

class ProductImage(BaseModel):
    id: int
    url: str = ""
    alt: str | None = None
    position: int = 0
    file_id: int | None = None


class ProductDto(BaseModel):
    id: int
    name: str
    slug: str
    sku: str
    description: str | None = None
    short_description: str | None = None
    price: float = 0.0
    status: str = "Active"
    vendor: str | None = None
    tags: str | None = None
    images: list[ProductImage] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, product: Product) -> "ProductDto":
        return cls(
            id=product.id,
            name=product.name,
            slug=product.slug,
            sku=product.sku,
            description=product.description,
            short_description=product.short_description,
            price=product.price,
            status=product.status,
            vendor=product.vendor,
            tags=product.tags,
            images=sorted((ProductImage(**i) for i in product.images or []), key=lambda i: i.position),
            created_at=product.created_at,
            updated_at=product.updated_at,
        )


class ProductCreate(BaseModel):
    name: str
    sku: str
    slug: str | None = None
    description: str | None = None
    short_description: str | None = None
    price: float = 0.0
    status: str = "Active"
    vendor: str | None = None
    tags: str | None = None


class ProductUpdate(BaseModel):
    name: str | None = None
    sku: str | None = None
    slug: str | None = None
    description: str | None = None
    short_description: str | None = None
    price: float | None = None
    status: str | None = None
    vendor: str | None = None
    tags: str | None = None


class ProductImageCreate(BaseModel):
    url: str = ""
    alt: str | None = None
    position: int | None = None
    file_id: int | None = None


class VariantDto(BaseModel):
    id: int
    product_id: int
    title: str
    sku: str
    price: float = 0.0
    quantity: int = 0
    position: int = 0
    is_default: bool = False

    @classmethod
    def from_entity(cls, variant: ProductVariant) -> "VariantDto":
        return cls(
            id=variant.id,
            product_id=variant.product_id,
            title=variant.title,
            sku=variant.sku,
            price=variant.price,
            quantity=variant.quantity,
            position=variant.position,
            is_default=variant.is_default,
        )


class VariantCreate(BaseModel):
    title: str
    sku: str
    price: float = 0.0
    quantity: int = 0
    is_default: bool = False


class ProductPage(BaseModel):
    items: list[ProductDto] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "product"


# ═══════════════ SERVICE ═══════════════

class ProductService:

    def __init__(
        self,
        products: Repository[Product],
        variants: Repository[ProductVariant],
        cache: CacheService,
        invalidation: CacheInvalidationCoordinator,
        files: Repository[FileEntity] | None = None,
    ):
        self.products = products
        self.variants = variants
        self.cache = cache
        self.invalidation = invalidation
        self.files = files

    async def _require(self, product_id: int) -> Product:
        product = await self.products.get_by_id(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    async def _invalidate(self, product_id: int):
        await self.invalidation.invalidate_entity("product", product_id)
        await self.invalidation.invalidate_entity_type("product")

    async def _ensure_unique_slug(self, slug: str, exclude_id: int | None = None):
        existing = await self.products.first(include_deleted=True, slug=slug)
        if existing is not None and existing.id != exclude_id:
            state = "deleted product" if existing.is_deleted else "product"
            raise ValidationError(f"Slug '{slug}' is already used by {state} {existing.id}")

    async def _ensure_unique_sku(self, sku: str, exclude_product_id: int | None = None, exclude_variant_id: int | None = None):
        # Unique constraints span soft-deleted rows.
        product = await self.products.first(include_deleted=True, sku=sku)
        if product is not None and product.id != exclude_product_id:
            state = "deleted product" if product.is_deleted else "product"
            raise ValidationError(f"SKU '{sku}' is already used by {state} {product.id}")
        variant = await self.variants.first(include_deleted=True, sku=sku)
        if variant is not None and variant.id != exclude_variant_id:
            state = "deleted variant" if variant.is_deleted else "variant"
            raise ValidationError(f"SKU '{sku}' is already used by {state} {variant.id}")

    async def _unique_slug_from(self, name: str) -> str:
        base = slugify(name)
        slug, counter = base, 1
        while await self.products.exists(include_deleted=True, slug=slug):
            slug = f"{base}-{counter}"
            counter += 1
        return slug

    # ── reads ──

    async def get_by_id(self, product_id: int) -> ProductDto:
        async def produce():
            product = await self.products.get_by_id(product_id)
            return ProductDto.from_entity(product).model_dump(mode="json") if product else None

        data = await self.cache.get_or_add(cache_keys.product(product_id), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("Product", product_id)
        return ProductDto.model_validate(data)

    async def get_by_slug(self, slug: str) -> ProductDto:
        async def produce():
            product = await self.products.first(slug=slug)
            return ProductDto.from_entity(product).model_dump(mode="json") if product else None

        data = await self.cache.get_or_add(cache_keys.product_by_slug(slug), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("Product", slug)
        return ProductDto.model_validate(data)

    async def get_paged(self, page: int = 1, page_size: int = 10) -> ProductPage:
        page = max(1, page)
        page_size = max(1, min(page_size, 100))

        async def produce():
            items, total = await self.products.page((page - 1) * page_size, page_size)
            return ProductPage(
                items=[ProductDto.from_entity(p) for p in items],
                total=total, page=page, page_size=page_size,
            ).model_dump(mode="json")

        data = await self.cache.get_or_add(
            cache_keys.product_list(page, page_size), produce, self.cache.get_ttl("list"),
        )
        return ProductPage.model_validate(data)

    async def get_variants(self, product_id: int) -> list[VariantDto]:
        await self._require(product_id)

        async def produce():
            variants = await self.variants.find(product_id=product_id)
            variants.sort(key=lambda v: (v.position, v.id))
            return [VariantDto.from_entity(v).model_dump(mode="json") for v in variants]

        data = await self.cache.get_or_add(
            cache_keys.product_variants(product_id), produce, self.cache.get_ttl("list"),
        )
        return [VariantDto.model_validate(v) for v in data]

    # ── writes ──

    async def create(self, data: ProductCreate) -> ProductDto:
        if not data.name.strip():
            raise ValidationError("Product name is required")
        if not data.sku.strip():
            raise ValidationError("Product SKU is required")
        if data.slug:
            await self._ensure_unique_slug(data.slug)
            slug = data.slug
        else:
            slug = await self._unique_slug_from(data.name)
        await self._ensure_unique_sku(data.sku)

        product = await self.products.add(Product(
            name=data.name,
            slug=slug,
            sku=data.sku,
            description=data.description,
            short_description=data.short_description,
            price=data.price,
            status=data.status,
            vendor=data.vendor,
            tags=data.tags,
            images=[],
        ))
        await self.invalidation.invalidate_entity_type("product")
        logger.info("Product created | id=%d | sku=%s", product.id, product.sku)
        return ProductDto.from_entity(product)

    async def update(self, product_id: int, changes: ProductUpdate) -> ProductDto:
        product = await self._require(product_id)
        values = changes.model_dump(exclude_unset=True)
        if values.get("slug") and values["slug"] != product.slug:
            await self._ensure_unique_slug(values["slug"], exclude_id=product_id)
        if values.get("sku") and values["sku"] != product.sku:
            await self._ensure_unique_sku(values["sku"], exclude_product_id=product_id)

        for field_name, value in values.items():
            if value is not None:
                setattr(product, field_name, value)
        product.touch()
        product = await self.products.update(product)
        await self._invalidate(product_id)
        return ProductDto.from_entity(product)

    async def delete(self, product_id: int) -> bool:
        if not await self.products.soft_delete(product_id):
            raise NotFoundError("Product", product_id)
        await self.variants.soft_delete_all(product_id=product_id)
        await self._invalidate(product_id)
        logger.info("Product deleted | id=%d", product_id)
        return True

    async def restore(self, product_id: int) -> ProductDto:
        """Bring back a deleted product and the variants deleted along with it."""
        product = await self.products.get_by_id(product_id, include_deleted=True)
        if product is None or not product.is_deleted:
            raise NotFoundError("Product", product_id)
        await self._ensure_unique_slug(product.slug, exclude_id=product_id)
        await self._ensure_unique_sku(product.sku, exclude_product_id=product_id)

        deleted_at = as_utc(product.deleted_at)
        if not await self.products.restore(product_id):
            raise NotFoundError("Product", product_id)
        restored_variants = 0
        for variant in await self.variants.find(include_deleted=True, product_id=product_id):
            if not variant.is_deleted or variant.deleted_at is None:
                continue
            if deleted_at is None or as_utc(variant.deleted_at) >= deleted_at:
                restored_variants += await self.variants.restore(variant.id)
        await self._invalidate(product_id)
        logger.info("Product restored | id=%d | variants=%d", product_id, restored_variants)
        return ProductDto.from_entity(await self._require(product_id))

    async def add_image(self, product_id: int, image: ProductImageCreate) -> ProductImage:
        product = await self._require(product_id)
        url = image.url
        if image.file_id is not None and self.files is not None:
            file = await self.files.get_by_id(image.file_id)
            if file is None:
                raise NotFoundError("File", image.file_id)
            if file.file_type != FileType.IMAGE.value:
                raise ValidationError(f"File with ID {image.file_id} is not an image")
            url = url or f"/files/{file.id}"

        images = list(product.images or [])
        added = ProductImage(
            id=max((i["id"] for i in images), default=0) + 1,
            url=url,
            alt=image.alt,
            position=image.position if image.position is not None else len(images),
            file_id=image.file_id,
        )
        images.append(added.model_dump())
        product.images = images
        product.touch()
        await self.products.update(product)
        await self._invalidate(product_id)
        return added

    async def reorder_images(self, product_id: int, positions: dict[int, int]) -> list[ProductImage]:
        """Apply {image_id: position}; unknown image ids are rejected."""
        product = await self._require(product_id)
        images = [dict(i) for i in product.images or []]
        known = {i["id"] for i in images}
        unknown = set(positions) - known
        if unknown:
            raise ValidationError(f"Unknown image ids for product {product_id}: {sorted(unknown)}")
        for entry in images:
            if entry["id"] in positions:
                entry["position"] = positions[entry["id"]]
        images.sort(key=lambda i: (i["position"], i["id"]))
        product.images = images
        product.touch()
        await self.products.update(product)
        await self._invalidate(product_id)
        return [ProductImage(**i) for i in images]

    async def add_variant(self, product_id: int, data: VariantCreate) -> VariantDto:
        await self._require(product_id)
        if not data.sku.strip():
            raise ValidationError("Variant SKU is required")
        await self._ensure_unique_sku(data.sku)

        existing = await self.variants.find(product_id=product_id)
        if data.is_default:
            for other in existing:
                if other.is_default:
                    other.is_default = False
                    other.touch()
                    await self.variants.update(other)
        variant = await self.variants.add(ProductVariant(
            product_id=product_id,
            title=data.title,
            sku=data.sku,
            price=data.price,
            quantity=data.quantity,
            position=len(existing),
            is_default=data.is_default or not existing,
        ))
        await self.invalidation.invalidate_entity("productvariant", variant.id)
        await self._invalidate(product_id)
        return VariantDto.from_entity(variant)
