"""Work unit (ticket or booking) models.

The surrounding system owns most of a work unit; this package only reads
and writes the assignment fields, and only through AssignmentService and
the auto-reject sweep.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vendor_ledger.clock import utc_now
from vendor_ledger.models.base import Base


class WorkUnit(Base):
    """A ticket or booking that can be handed to a vendor."""

    __tablename__ = "work_unit"

    work_unit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    case_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default="ticket")
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Public lifecycle, owned by the surrounding system
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Submitted")

    vendor_status: Mapped[str] = mapped_column(String(16), nullable=False, default="Unassigned")
    assigned_vendor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    response_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    assignment_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    completion_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    payment_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    billing_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("kind IN ('ticket', 'booking')", name="work_unit_kind_ck"),
        CheckConstraint(
            """vendor_status IN (
                'Unassigned', 'Pending', 'Accepted', 'Completed', 'Declined', 'Cancelled'
            )""",
            name="work_unit_vendor_status_ck",
        ),
        Index("work_unit_by_vendor", "assigned_vendor_id", "vendor_status"),
        Index("work_unit_pending_deadline", "vendor_status", "response_deadline"),
    )

    assignments: Mapped[list[AssignmentRecord]] = relationship(
        "AssignmentRecord",
        back_populates="work_unit",
        order_by="AssignmentRecord.sequence",
        cascade="all, delete-orphan",
    )

    def current_assignment(self) -> AssignmentRecord | None:
        """History entry for the live assignment, if any."""
        for record in reversed(self.assignments):
            if record.sequence == self.assignment_seq:
                return record
        return None


class AssignmentRecord(Base):
    """One entry of a work unit's assignment history.

    Rows are only ever appended; the ``status`` of the live entry follows
    the vendor's response (assigned → accepted → completed, and so on).
    """

    __tablename__ = "work_unit_assignment"

    assignment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    work_unit_id: Mapped[UUID] = mapped_column(
        ForeignKey("work_unit.work_unit_id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="assigned")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            """status IN (
                'assigned', 'accepted', 'declined', 'completed', 'cancelled', 'auto_rejected'
            )""",
            name="work_unit_assignment_status_ck",
        ),
    )

    work_unit: Mapped[WorkUnit] = relationship("WorkUnit", back_populates="assignments")
