"""Company service — the tenant's single company record, cached."""

import asyncio
import logging
from datetime import datetime

from pydantic import BaseModel

from cms_backend.errors import NotFoundError
from cms_backend.models import Company
from cms_backend.repositories import Repository
from cms_backend.services import cache_keys
from cms_backend.services.cache import CacheService
from cms_backend.services.cache_invalidation import CacheInvalidationCoordinator

logger = logging.getLogger(__name__)


class CompanyDto(BaseModel):
    id: int
    name: str
    description: str | None = None
    website: str | None = None
    email: str | None = None
    phone: str | None = None
    currency: str = "USD"
    language: str = "en"
    timezone: str = "UTC"
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, company: Company) -> "CompanyDto":
        return cls(
            id=company.id,
            name=company.name,
            description=company.description,
            website=company.website,
            email=company.email,
            phone=company.phone,
            currency=company.currency,
            language=company.language,
            timezone=company.timezone,
            is_active=company.is_active,
            created_at=company.created_at,
            updated_at=company.updated_at,
        )


class CompanyUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    website: str | None = None
    email: str | None = None
    phone: str | None = None
    currency: str | None = None
    language: str | None = None
    timezone: str | None = None
    is_active: bool | None = None


class CompanyService:

    def __init__(
        self,
        repository: Repository[Company],
        cache: CacheService,
        invalidation: CacheInvalidationCoordinator,
    ):
        self.repository = repository
        self.cache = cache
        self.invalidation = invalidation
        self._create_lock = asyncio.Lock()

    async def _get_or_create(self) -> Company:
        company = await self.repository.first()
        if company is not None:
            return company
        async with self._create_lock:
            company = await self.repository.first()
            if company is None:
                company = await self.repository.add(Company(
                    name="Default Company",
                    description="Default company description",
                    is_active=True,
                    currency="USD",
                    language="en",
                    timezone="UTC",
                ))
                logger.info("Default company created | id=%d", company.id)
            return company

    async def get_company(self) -> CompanyDto:
        """The company record, created with defaults on first access."""
        async def produce():
            return CompanyDto.from_entity(await self._get_or_create()).model_dump(mode="json")

        data = await self.cache.get_or_add(cache_keys.COMPANY_MAIN, produce, self.cache.get_ttl("entity"))
        return CompanyDto.model_validate(data)

    async def get_by_id(self, company_id: int) -> CompanyDto:
        async def produce():
            company = await self.repository.get_by_id(company_id)
            return CompanyDto.from_entity(company).model_dump(mode="json") if company else None

        data = await self.cache.get_or_add(cache_keys.company(company_id), produce, self.cache.get_ttl("entity"))
        if data is None:
            raise NotFoundError("Company", company_id)
        return CompanyDto.model_validate(data)

    async def update_company(self, changes: CompanyUpdate) -> CompanyDto:
        company = await self.repository.first()
        if company is None:
            raise NotFoundError("Company", "main")
        for field_name, value in changes.model_dump(exclude_unset=True).items():
            setattr(company, field_name, value)
        company.touch()
        company = await self.repository.update(company)

        await self.invalidation.invalidate_entity("company", company.id)
        logger.info("Company updated | id=%d", company.id)
        return CompanyDto.from_entity(company)
