"""
Practice Payroll - Year-to-Date Ledger

Running totals per employee per tax year, maintained as runs are
processed. The ledger is a cache: ground truth is always the sum of the
PROCESSED and PAID payroll entries for that tax year.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    DateTime, ForeignKey, Integer, Numeric, String, Uuid, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from practice_payroll.models.base import BaseModel

if TYPE_CHECKING:
    from practice_payroll.models.employee import Employee


# Ledger columns, in reporting order
YTD_FIELDS = (
    "ytd_gross",
    "ytd_taxable_income",
    "ytd_paye",
    "ytd_uif_employee",
    "ytd_uif_employer",
    "ytd_sdl",
    "ytd_pension",
    "ytd_medical_aid",
    "ytd_other_deductions",
    "ytd_total_deductions",
    "ytd_net",
    "ytd_fringe_benefits",
    "ytd_medical_credits",
)


class EmployeeYTD(BaseModel):
    """Cached year-to-date payroll figures for one employee and tax year."""
    
    __tablename__ = "employee_ytd"
    
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
    )
    tax_year: Mapped[str] = mapped_column(String(9), nullable=False)
    
    # Earnings (gross includes irregular payments)
    ytd_gross: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_taxable_income: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_fringe_benefits: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    
    # Statutory
    ytd_paye: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_uif_employee: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_uif_employer: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_sdl: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_medical_credits: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    
    # Other deductions
    ytd_pension: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_medical_aid: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_other_deductions: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_total_deductions: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    ytd_net: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=Decimal("0"), nullable=False)
    
    # Tracking
    periods_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_payroll_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    last_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    employee: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    
    __table_args__ = (
        UniqueConstraint('employee_id', 'tax_year', name='uq_employee_ytd_employee_year'),
        Index('ix_employee_ytd_practice_year', 'practice_id', 'tax_year'),
    )
    
    def __repr__(self) -> str:
        return f"<EmployeeYTD(employee={self.employee_id}, tax_year={self.tax_year}, periods={self.periods_processed})>"
