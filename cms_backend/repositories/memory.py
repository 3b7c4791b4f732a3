"""Process-local repository used when no database is reachable, and in tests.

Every call yields to the event loop once so callers see the same
interleavings they would against a real store.
"""

import asyncio
import itertools
from datetime import datetime
from typing import Any, Iterable

from cms_backend.models.base import as_utc, utcnow
from cms_backend.repositories.base import Repository, T


class MemoryRepository(Repository[T]):

    def __init__(self, model: type[T]):
        super().__init__(model)
        self._rows: dict[int, T] = {}
        self._ids = itertools.count(1)

    def _apply_defaults(self, entity: T) -> None:
        for prop in self.model.__mapper__.column_attrs:
            default = prop.columns[0].default
            if default is None or getattr(entity, prop.key, None) is not None:
                continue
            if default.is_callable:
                setattr(entity, prop.key, default.arg(None))
            elif default.is_scalar:
                setattr(entity, prop.key, default.arg)

    @staticmethod
    def _matches(entity: T, equals: dict[str, Any]) -> bool:
        return all(getattr(entity, key) == value for key, value in equals.items())

    async def get_by_id(self, entity_id: int, include_deleted: bool = False) -> T | None:
        await asyncio.sleep(0)
        entity = self._rows.get(entity_id)
        if entity is None or (entity.is_deleted and not include_deleted):
            return None
        return entity

    async def find(
        self,
        ids: Iterable[int] | None = None,
        updated_since: datetime | None = None,
        include_deleted: bool = False,
        **equals: Any,
    ) -> list[T]:
        await asyncio.sleep(0)
        wanted = set(ids) if ids is not None else None
        since = as_utc(updated_since)
        found = []
        for entity_id in sorted(self._rows):
            entity = self._rows[entity_id]
            if entity.is_deleted and not include_deleted:
                continue
            if wanted is not None and entity_id not in wanted:
                continue
            if since is not None and as_utc(entity.updated_at) < since:
                continue
            if self._matches(entity, equals):
                found.append(entity)
        return found

    async def count(self, **equals: Any) -> int:
        return len(await self.find(**equals))

    async def page(
        self,
        offset: int,
        limit: int,
        order_by: str = "created_at",
        descending: bool = True,
        **equals: Any,
    ) -> tuple[list[T], int]:
        found = await self.find(**equals)
        if not hasattr(self.model, order_by):
            order_by = "created_at"
        found.sort(key=lambda e: e.id)
        found.sort(key=lambda e: getattr(e, order_by), reverse=descending)
        return found[offset:offset + limit], len(found)

    async def add(self, entity: T) -> T:
        await asyncio.sleep(0)
        self._apply_defaults(entity)
        if entity.id is None:
            entity.id = next(self._ids)
        self._rows[entity.id] = entity
        return entity

    async def update(self, entity: T) -> T:
        await asyncio.sleep(0)
        if entity.id is None:
            return await self.add(entity)
        self._rows[entity.id] = entity
        return entity

    async def soft_delete(self, entity_id: int, user_id: int | None = None) -> bool:
        entity = await self.get_by_id(entity_id)
        if entity is None:
            return False
        now = utcnow()
        entity.is_deleted = True
        entity.deleted_at = now
        entity.updated_at = now
        entity.updated_by_user_id = user_id
        return True

    async def restore(self, entity_id: int) -> bool:
        entity = await self.get_by_id(entity_id, include_deleted=True)
        if entity is None or not entity.is_deleted:
            return False
        entity.is_deleted = False
        entity.deleted_at = None
        entity.updated_at = utcnow()
        return True

    async def delete(self, entity_id: int) -> bool:
        await asyncio.sleep(0)
        return self._rows.pop(entity_id, None) is not None

    async def soft_delete_all(self, **equals: Any) -> int:
        now = utcnow()
        live = await self.find(**equals)
        for entity in live:
            entity.is_deleted = True
            entity.deleted_at = now
            entity.updated_at = now
        return len(live)

    async def purge_deleted(self, before: datetime) -> int:
        await asyncio.sleep(0)
        cutoff = as_utc(before)
        doomed = [
            entity_id for entity_id, entity in self._rows.items()
            if entity.is_deleted and entity.deleted_at is not None and as_utc(entity.deleted_at) < cutoff
        ]
        for entity_id in doomed:
            del self._rows[entity_id]
        return len(doomed)
