"""SQLAlchemy-backed repository — one session and one transaction per call."""

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cms_backend.models.base import utcnow
from cms_backend.repositories.base import Repository, T

logger = logging.getLogger(__name__)


class SqlRepository(Repository[T]):

    def __init__(self, model: type[T], session_factory: async_sessionmaker[AsyncSession]):
        super().__init__(model)
        self._session_factory = session_factory

    def _select(self, include_deleted: bool = False, **equals: Any):
        stmt = select(self.model)
        if not include_deleted:
            stmt = stmt.where(self.model.is_deleted.is_(False))
        if equals:
            stmt = stmt.filter_by(**equals)
        return stmt

    async def get_by_id(self, entity_id: int, include_deleted: bool = False) -> T | None:
        async with self._session_factory() as session:
            entity = await session.get(self.model, entity_id)
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
        stmt = self._select(include_deleted, **equals)
        if ids is not None:
            stmt = stmt.where(self.model.id.in_(list(ids)))
        if updated_since is not None:
            stmt = stmt.where(self.model.updated_at >= updated_since)
        stmt = stmt.order_by(self.model.id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def first(self, **equals: Any) -> T | None:
        stmt = self._select(**equals).order_by(self.model.id).limit(1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalars().first()

    async def count(self, **equals: Any) -> int:
        stmt = select(func.count()).select_from(self._select(**equals).subquery())
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def page(
        self,
        offset: int,
        limit: int,
        order_by: str = "created_at",
        descending: bool = True,
        **equals: Any,
    ) -> tuple[list[T], int]:
        column = getattr(self.model, order_by, self.model.created_at)
        stmt = (
            self._select(**equals)
            .order_by(column.desc() if descending else column.asc(), self.model.id)
            .offset(offset)
            .limit(limit)
        )
        total = await self.count(**equals)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all()), total

    async def add(self, entity: T) -> T:
        async with self._session_factory() as session:
            session.add(entity)
            await session.commit()
            return entity

    async def update(self, entity: T) -> T:
        async with self._session_factory() as session:
            merged = await session.merge(entity)
            await session.commit()
            return merged

    async def soft_delete(self, entity_id: int, user_id: int | None = None) -> bool:
        now = utcnow()
        stmt = (
            update(self.model)
            .where(self.model.id == entity_id, self.model.is_deleted.is_(False))
            .values(is_deleted=True, deleted_at=now, updated_at=now, updated_by_user_id=user_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def restore(self, entity_id: int) -> bool:
        stmt = (
            update(self.model)
            .where(self.model.id == entity_id, self.model.is_deleted.is_(True))
            .values(is_deleted=False, deleted_at=None, updated_at=utcnow())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def delete(self, entity_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(self.model).where(self.model.id == entity_id))
            await session.commit()
            return result.rowcount > 0

    async def soft_delete_all(self, **equals: Any) -> int:
        now = utcnow()
        stmt = update(self.model).where(self.model.is_deleted.is_(False))
        for key, value in equals.items():
            stmt = stmt.where(getattr(self.model, key) == value)
        stmt = stmt.values(is_deleted=True, deleted_at=now, updated_at=now)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            logger.info("Soft-deleted rows | table=%s | count=%d", self.model.__tablename__, result.rowcount)
            return result.rowcount

    async def purge_deleted(self, before: datetime) -> int:
        stmt = delete(self.model).where(
            self.model.is_deleted.is_(True),
            self.model.deleted_at < before,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount
