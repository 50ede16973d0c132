"""
Practice Payroll - Pay Advance Model

Employee-initiated salary advance recovered through payroll:

    PENDING -> APPROVED -> DEDUCTED
            -> REJECTED

An APPROVED advance is reserved by at most one payroll run
(payroll_run_id) and becomes DEDUCTED when that run is paid.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    DateTime, ForeignKey, Numeric, String, Text, Uuid,
    Enum as SQLEnum, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from practice_payroll.models.base import BaseModel

if TYPE_CHECKING:
    from practice_payroll.models.employee import Employee


class PayAdvanceStatus(str, Enum):
    """Pay advance status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEDUCTED = "deducted"


class PayAdvance(BaseModel):
    """Salary advance request."""
    
    __tablename__ = "pay_advances"
    
    practice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("practices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requested_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[PayAdvanceStatus] = mapped_column(
        SQLEnum(PayAdvanceStatus),
        default=PayAdvanceStatus.PENDING,
        nullable=False,
    )
    
    # Decision
    decided_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    
    # Recovery
    payroll_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Run that recovers the advance",
    )
    deducted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    employee: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    
    __table_args__ = (
        CheckConstraint('requested_amount > 0', name='ck_pay_advance_positive'),
    )
    
    @property
    def amount(self) -> Decimal:
        """Amount to recover: the approved figure when one was set."""
        if self.approved_amount is not None:
            return self.approved_amount
        return self.requested_amount
