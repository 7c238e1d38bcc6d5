# accountability/entities.py
from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Index,
    JSON,
)

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

# JSONB on Postgres, plain JSON (json_extract) everywhere else
PropertyBag = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String, nullable=False, default="")

    # origin for sprint-index arithmetic
    sprint_start_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class Document(Base):
    """
    Generic polymorphic entity: sprints, projects, issues, standups, reviews
    and retros all live here, told apart by document_type. Kind-specific
    attributes are kept in the `properties` bag and validated through
    accountability.document_props before the engine reads them.
    """
    __tablename__ = "documents"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    workspace_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    document_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    properties: Mapped[dict[str, object]] = mapped_column(PropertyBag, nullable=False, default=dict)

    # human-facing issue number, unique per workspace (allocated under the workspace lock)
    ticket_number: Mapped[int | None] = mapped_column(Integer)

    parent_id: Mapped[UUID | None] = mapped_column(
        String(36),
        ForeignKey("documents.id", ondelete="SET NULL"),
    )
    created_by: Mapped[UUID | None] = mapped_column(String(36))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False))

    __table_args__ = (
        Index("ix_documents_workspace_type", "workspace_id", "document_type"),
        Index("ix_documents_parent_id", "parent_id"),
        Index("ix_documents_workspace_ticket", "workspace_id", "ticket_number"),
    )


class DocumentAssociation(Base):
    __tablename__ = "document_associations"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))

    document_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    related_id: Mapped[UUID] = mapped_column(
        String(36),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    # "sprint" | "project"
    relationship_type: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        Index("ix_document_associations_related", "related_id", "relationship_type"),
        Index("ix_document_associations_document", "document_id", "relationship_type"),
    )


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sender_id: Mapped[str] = mapped_column(String, nullable=False)
    receiver_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, object]] = mapped_column(PropertyBag, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
