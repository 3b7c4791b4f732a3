"""Content models — pages, users and component templates."""

from sqlalchemy import JSON, Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cms_backend.models.base import Base, EntityMixin


class Page(EntityMixin, Base):
    """CMS page. `components` is a JSON tree of
    {name, type, properties, content, children, is_deleted} nodes."""

    __tablename__ = "pages"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_keywords: Mapped[str | None] = mapped_column(String(500), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Draft")
    requires_login: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_page_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    components: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class User(EntityMixin, Base):
    __tablename__ = "users"

    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    username: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False, default="Customer")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class ComponentTemplate(EntityMixin, Base):
    __tablename__ = "component_templates"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[str | None] = mapped_column(String(500), nullable=True)
    config_schema: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    default_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_system_template: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
