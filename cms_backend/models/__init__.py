"""SQLAlchemy ORM models."""

from cms_backend.models.base import Base
from cms_backend.models.company import Company
from cms_backend.models.content import ComponentTemplate, Page, User
from cms_backend.models.files import FileEntity, FileType
from cms_backend.models.product import Product, ProductVariant
from cms_backend.models.search_index import IndexingJob, SearchIndex

__all__ = [
    "Base",
    "Company",
    "ComponentTemplate",
    "FileEntity",
    "FileType",
    "IndexingJob",
    "Page",
    "Product",
    "ProductVariant",
    "SearchIndex",
    "User",
]
