"""Entity store implementations."""

from cms_backend.repositories.base import Repository
from cms_backend.repositories.memory import MemoryRepository
from cms_backend.repositories.sql import SqlRepository

__all__ = ["MemoryRepository", "Repository", "SqlRepository"]
