from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.pcms.models import Base


class Case(Base):
    __tablename__ = "cases"
    __table_args__ = (
        Index("idx_cases_student", "student_id"),
        Index("idx_cases_assigned_to", "assigned_to_id"),
        Index("idx_cases_status", "status"),
        Index("idx_cases_department", "department_id"),
        Index("idx_cases_is_deleted", "is_deleted"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    case_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "CASE-7K2QX0M1ZB"
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    student_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id", ondelete="SET NULL"), nullable=True)

    # draft -> submitted -> assigned -> in_review -> (revision_requested | completed); see workflow.py
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Clinical content (editable only in draft / revision_requested)
    patient_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    medical_history: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    soap_note: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    case_details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    attachments: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    # Report artifact, set by the completion transition (or regenerate)
    report_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    report_qr_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    report_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    report_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    workflow_history: Mapped[list["CaseWorkflowEntry"]] = relationship(
        "CaseWorkflowEntry",
        back_populates="case",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CaseWorkflowEntry.id",
    )
    revision_requests: Mapped[list["CaseRevisionRequest"]] = relationship(
        "CaseRevisionRequest",
        back_populates="case",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CaseRevisionRequest.id",
    )
    evaluation: Mapped["CaseEvaluation | None"] = relationship(
        "CaseEvaluation",
        back_populates="case",
        cascade="all, delete-orphan",
        lazy="selectin",
        uselist=False,
    )

    @property
    def has_report(self) -> bool:
        return self.report_path is not None


class CaseWorkflowEntry(Base):
    """Append-only: one row per committed status change (plus the initial draft row)."""

    __tablename__ = "case_workflow_entries"
    __table_args__ = (
        Index("idx_case_workflow_case", "case_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="workflow_history", lazy="selectin")


class CaseRevisionRequest(Base):
    __tablename__ = "case_revision_requests"
    __table_args__ = (
        Index("idx_case_revision_requests_case", "case_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), nullable=False)
    requested_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    # Set when the owner resubmits
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    case: Mapped[Case] = relationship("Case", back_populates="revision_requests", lazy="selectin")


class CaseEvaluation(Base):
    """Written exactly once, by the completion transition."""

    __tablename__ = "case_evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, unique=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    max_score: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    # [{"criterion": ..., "score": ..., "max_score": ..., "comments": ...}]
    rubric_items: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    evaluated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    case: Mapped[Case] = relationship("Case", back_populates="evaluation", lazy="selectin")
