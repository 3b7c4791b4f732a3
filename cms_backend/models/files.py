"""FileEntity model — uploaded file content stored alongside its metadata."""

import enum

from sqlalchemy import JSON, BigInteger, Boolean, Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cms_backend.models.base import Base, EntityMixin


class FileType(str, enum.Enum):
    DOCUMENT = "Document"
    IMAGE = "Image"
    VIDEO = "Video"
    AUDIO = "Audio"
    ARCHIVE = "Archive"
    OTHER = "Other"


class FileEntity(EntityMixin, Base):
    __tablename__ = "files"

    original_file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stored_file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_extension: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    file_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    file_content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    thumbnail_content: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    alt: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    folder_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    tags: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending")
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
