"""Generic entity store interface.

Services depend on this interface only; the concrete store is either the
SQLAlchemy-backed `SqlRepository` or the process-local `MemoryRepository`.
Every query excludes soft-deleted rows unless `include_deleted` is set.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Generic, Iterable, TypeVar

from cms_backend.models.base import EntityMixin

T = TypeVar("T", bound=EntityMixin)


class Repository(ABC, Generic[T]):
    """Async CRUD + equality-filter queries over one entity model."""

    def __init__(self, model: type[T]):
        self.model = model

    @property
    def entity_name(self) -> str:
        return self.model.__name__

    @abstractmethod
    async def get_by_id(self, entity_id: int, include_deleted: bool = False) -> T | None: ...

    @abstractmethod
    async def find(
        self,
        ids: Iterable[int] | None = None,
        updated_since: datetime | None = None,
        include_deleted: bool = False,
        **equals: Any,
    ) -> list[T]: ...

    @abstractmethod
    async def count(self, **equals: Any) -> int: ...

    @abstractmethod
    async def page(
        self,
        offset: int,
        limit: int,
        order_by: str = "created_at",
        descending: bool = True,
        **equals: Any,
    ) -> tuple[list[T], int]: ...

    @abstractmethod
    async def add(self, entity: T) -> T: ...

    @abstractmethod
    async def update(self, entity: T) -> T: ...

    @abstractmethod
    async def soft_delete(self, entity_id: int, user_id: int | None = None) -> bool: ...

    @abstractmethod
    async def restore(self, entity_id: int) -> bool: ...

    @abstractmethod
    async def delete(self, entity_id: int) -> bool: ...

    @abstractmethod
    async def soft_delete_all(self, **equals: Any) -> int: ...

    @abstractmethod
    async def purge_deleted(self, before: datetime) -> int: ...

    async def get_all(self) -> list[T]:
        return await self.find()

    async def first(self, **equals: Any) -> T | None:
        found = await self.find(**equals)
        return found[0] if found else None

    async def exists(self, **equals: Any) -> bool:
        return await self.first(**equals) is not None
