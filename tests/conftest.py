"""Shared test fixtures and configuration."""

import io
import os

import pytest
from PIL import Image

# Tests never touch PostgreSQL or Redis
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:1")

from cms_backend.container import build_container  # noqa: E402
from cms_backend.models import ComponentTemplate, FileEntity, Page, User  # noqa: E402
from cms_backend.services.cache import CacheService  # noqa: E402
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator  # noqa: E402


@pytest.fixture
def cache():
    """Fresh cache service without Redis."""
    return CacheService()


@pytest.fixture
def invalidation(cache):
    return CacheInvalidationCoordinator(cache)


@pytest.fixture
def container(cache):
    """Every service wired over the in-memory store."""
    return build_container(cache)


@pytest.fixture
def png_bytes():
    def make(width: int = 64, height: int = 48, color: str = "red") -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, format="PNG")
        return buffer.getvalue()
    return make


def make_page(**overrides) -> Page:
    values = {
        "name": "about",
        "title": "About Us",
        "slug": "about-us",
        "description": "Who we are and what we do",
        "status": "Published",
        "requires_login": False,
        "admin_only": False,
        "components": [],
    }
    values.update(overrides)
    return Page(**values)


def make_user(**overrides) -> User:
    values = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "username": "ada",
        "email": "ada@example.com",
        "role": "Admin",
    }
    values.update(overrides)
    return User(**values)


def make_template(**overrides) -> ComponentTemplate:
    values = {
        "name": "hero-banner",
        "display_name": "Hero Banner",
        "description": "Full-width banner with a call to action",
        "type": "container",
        "category": "Layout",
        "config_schema": {},
        "default_config": {},
    }
    values.update(overrides)
    return ComponentTemplate(**values)


def make_file(**overrides) -> FileEntity:
    values = {
        "original_file_name": "brochure.pdf",
        "stored_file_name": "abc.pdf",
        "content_type": "application/pdf",
        "file_size": 8,
        "file_extension": ".pdf",
        "file_type": "Document",
        "file_content": b"%PDF-1.4",
        "hash": "h",
        "is_public": True,
        "tags": {},
    }
    values.update(overrides)
    return FileEntity(**values)
