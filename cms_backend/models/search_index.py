"""Search index records and indexing job bookkeeping."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cms_backend.models.base import Base, EntityMixin, utcnow

TITLE_MAX_LENGTH = 500
CONTENT_MAX_LENGTH = 10000
SEARCH_VECTOR_MAX_LENGTH = 5000


class SearchIndex(EntityMixin, Base):
    """Denormalized searchable text for one (entity_type, entity_id).

    At most one non-deleted row exists per (entity_type, entity_id).
    """

    __tablename__ = "search_index"

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(TITLE_MAX_LENGTH), nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    search_vector: Mapped[str] = mapped_column(Text, nullable=False, default="")
    index_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_indexed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )


class JobStatus:
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class JobType:
    FULL = "Full"
    INCREMENTAL = "Incremental"


class IndexingJob(EntityMixin, Base):
    __tablename__ = "indexing_jobs"

    job_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=JobStatus.PENDING, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_entities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_entities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_entities: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    job_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
