from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pcms.models import Base

DOCUMENT_STATUSES = frozenset({"active", "inactive", "archived", "deleted"})
ACCESS_METHODS = frozenset({"direct", "qrcode", "link", "download"})


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_author", "author_id"),
        Index("idx_documents_department", "department_id"),
        Index("idx_documents_category", "category"),
        Index("idx_documents_is_deleted", "is_deleted"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "DOC-4Q8ZP1KX0A"
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    subcategory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # active / inactive / archived (deleted is reserved for soft-deleted rows)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    author_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id", ondelete="SET NULL"), nullable=True)

    # Access control descriptor (see app.pcms.access)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="private")
    allowed_roles: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    allowed_users: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    allowed_departments: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)

    qr_code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    qr_url: Mapped[str] = mapped_column(String(512), nullable=False)

    # Highest DocumentVersion.version; only ever incremented
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DocumentVersion.version",
    )
    access_logs: Mapped[list["DocumentAccessLog"]] = relationship(
        "DocumentAccessLog",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="select",
        order_by="DocumentAccessLog.id",
    )


class DocumentVersion(Base):
    """Append-only. A stored version is never rewritten or removed."""

    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version", name="uq_document_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    change_notes: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


class DocumentAccessLog(Base):
    __tablename__ = "document_access_logs"
    __table_args__ = (
        Index("idx_document_access_logs_document", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="access_logs", lazy="selectin")
