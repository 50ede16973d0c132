"""
Practice Payroll - Payroll Run Models

Lifecycle of a payroll run, one per (practice, month, year):

    DRAFT -> PROCESSED -> PAID

- DRAFT: entries may be regenerated and irregular payments added
- PROCESSED: entries locked, YTD applied, audit rows written
- PAID: terminal, reserved pay advances marked deducted

Amounts are stored as Numeric(15, 2) and rounded half-up to the cent.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from practice_payroll.models.base import BaseModel, AuditMixin

if TYPE_CHECKING:
    from practice_payroll.models.employee import Employee, Practice


# ===========================================
# ENUMS
# ===========================================

class PayrollStatus(str, Enum):
    """Payroll run status."""
    DRAFT = "draft"
    PROCESSED = "processed"
    PAID = "paid"


class PaymentType(str, Enum):
    """Irregular payment categories."""
    BONUS = "bonus"
    OVERTIME = "overtime"
    COMMISSION = "commission"
    THIRTEENTH_CHEQUE = "thirteenth_cheque"
    OTHER = "other"


class LineItemKind(str, Enum):
    """Closed set of payroll line item kinds."""
    PAYE = "paye"
    UIF = "uif"
    PENSION = "pension"
    MEDICAL_AID = "medical_aid"
    OTHER = "other"
    ADDITION = "addition"
    SDL = "sdl"


# ===========================================
# PAYROLL RUN
# ===========================================

class PayrollRun(BaseModel, AuditMixin):
    """
    Payroll for all employees of a practice for one calendar month.
    
    Totals always equal the sum of the entries; they are recomputed
    whenever entries change while the run is DRAFT.
    """
    
    __tablename__ = "payroll_runs"
    
    practice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("practices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_year: Mapped[str] = mapped_column(
        String(9), nullable=False,
        comment="Tax year label the run was calculated under",
    )
    tax_table_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    
    status: Mapped[PayrollStatus] = mapped_column(
        SQLEnum(PayrollStatus),
        default=PayrollStatus.DRAFT,
        nullable=False,
    )
    generation: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False,
        comment="Bumped on every (re)generation; guards concurrent writers",
    )
    
    # Totals
    employee_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_gross: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_additions: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_paye: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_uif_employee: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_net: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_employer_uif: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_employer_sdl: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    
    # Workflow
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    reversal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    declaration_submitted: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Monthly declaration for this run filed with the revenue service",
    )
    declaration_submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Relationships
    practice: Mapped["Practice"] = relationship("Practice", back_populates="payroll_runs")
    entries: Mapped[List["PayrollEntry"]] = relationship(
        "PayrollEntry",
        back_populates="payroll_run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    
    __table_args__ = (
        UniqueConstraint('practice_id', 'year', 'month', name='uq_payroll_run_practice_period'),
        CheckConstraint('month BETWEEN 1 AND 12', name='ck_payroll_run_month'),
    )
    
    @property
    def period_label(self) -> str:
        return f"{self.year}-{self.month:02d}"
    
    @property
    def is_editable(self) -> bool:
        return self.status == PayrollStatus.DRAFT
    
    def __repr__(self) -> str:
        return f"<PayrollRun(practice={self.practice_id}, period={self.period_label}, status={self.status})>"


# ===========================================
# PAYROLL ENTRY
# ===========================================

class PayrollEntry(BaseModel):
    """
    One employee's payroll figures within a run.
    
    total_deductions = paye + uif + pension + medical_aid + other_deductions
    net_salary = gross_salary + total_additions - total_deductions
    
    other_deductions includes any pay advance recovered in this run;
    pay_advance_amount records that share separately.
    """
    
    __tablename__ = "payroll_entries"
    
    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    
    # Earnings
    gross_salary: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    total_additions: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    fringe_benefits: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), default=Decimal("0"), nullable=False,
        comment="Taxable non-cash benefits, not paid out",
    )
    taxable_income: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    
    # Employee deductions
    paye_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    uif_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    pension_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    medical_aid_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    other_deductions: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    pay_advance_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    net_salary: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    medical_tax_credit: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    
    # Employer contributions
    employer_uif: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    employer_sdl: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    
    # Inputs and working, kept for audit and payslips
    compensation_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    calculation: Mapped[dict] = mapped_column(JSON, nullable=False)
    validation_warnings: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    payslip_blocked: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Payslip delivery withheld, e.g. missing banking details",
    )
    
    # Relationships
    payroll_run: Mapped["PayrollRun"] = relationship("PayrollRun", back_populates="entries")
    employee: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    additions: Mapped[List["PayrollAddition"]] = relationship(
        "PayrollAddition",
        back_populates="payroll_entry",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    line_items: Mapped[List["PayrollLineItem"]] = relationship(
        "PayrollLineItem",
        back_populates="payroll_entry",
        cascade="all, delete-orphan",
        order_by="PayrollLineItem.sort_order",
        lazy="selectin",
    )
    
    __table_args__ = (
        UniqueConstraint('payroll_run_id', 'employee_id', name='uq_payroll_entry_run_employee'),
    )


class PayrollAddition(BaseModel, AuditMixin):
    """Ad hoc irregular payment (bonus, overtime) on a DRAFT entry."""
    
    __tablename__ = "payroll_additions"
    
    payroll_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(
        SQLEnum(PaymentType),
        default=PaymentType.BONUS,
        nullable=False,
    )
    
    payroll_entry: Mapped["PayrollEntry"] = relationship("PayrollEntry", back_populates="additions")
    
    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payroll_addition_positive'),
    )


class PayrollLineItem(BaseModel):
    """
    Persisted form of a calculated line item.
    
    Employee deductions and employer contributions share the table;
    is_employer_contribution tells them apart.
    """
    
    __tablename__ = "payroll_line_items"
    
    payroll_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[LineItemKind] = mapped_column(SQLEnum(LineItemKind), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    is_employer_contribution: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True,
        comment="Source record, e.g. the pay advance or deduction",
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    payroll_entry: Mapped["PayrollEntry"] = relationship("PayrollEntry", back_populates="line_items")
