# panel/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

# JSONB on Postgres, plain JSON on SQLite (local runs, tests)
JsonBlob = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class Developer(Base, TimestampMixin):
    __tablename__ = "developer"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    email: Mapped[str | None] = mapped_column(String, unique=True)
    name: Mapped[str | None] = mapped_column(String)


class Project(Base, TimestampMixin):
    __tablename__ = "project"

    project_id: Mapped[UUID] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    developer_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("developer.id", ondelete="CASCADE"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(
        String,
        nullable=False,
        server_default=text("''"),
    )
    description: Mapped[str | None] = mapped_column(Text)

    # connection target
    mongo_uri: Mapped[str] = mapped_column(Text, nullable=False)
    database_name: Mapped[str] = mapped_column(String, nullable=False)
    collection_name: Mapped[str] = mapped_column(String, nullable=False)

    schema_data: Mapped[dict[str, object]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=dict,
    )
    # bumped on every schema write; saves compare-and-swap on it
    schema_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )

    # soft delete: projects are deactivated, never purged
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    __table_args__ = (
        Index("ix_project_developer_id", "developer_id"),
    )


class SharedLink(Base):
    __tablename__ = "shared_link"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    project_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("project.project_id", ondelete="CASCADE"),
        nullable=False,
    )

    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    can_view: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_insert: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_update: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_modify_schema: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # when set, the link exposes this schema instead of the project's
    custom_schema: Mapped[dict[str, object] | None] = mapped_column(JsonBlob, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_shared_link_project_id", "project_id"),
    )


class ClientEntry(Base):
    """Append-only audit of documents inserted through a shared link."""
    __tablename__ = "client_entry"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    project_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("project.project_id", ondelete="CASCADE"),
        nullable=False,
    )
    shared_link_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("shared_link.id", ondelete="SET NULL"),
        nullable=True,
    )
    document_id: Mapped[str] = mapped_column(String, nullable=False)
    data: Mapped[dict[str, object]] = mapped_column(JsonBlob, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    __table_args__ = (
        Index("ix_client_entry_project_id", "project_id"),
        Index("ix_client_entry_link_id", "shared_link_id"),
    )
