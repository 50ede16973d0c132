"""
Practice Payroll - Payroll Audit Log

Append-only record of every payroll entry calculation. Each row holds
the input snapshot, the tax table version and every intermediate value,
so any figure can be reproduced and justified later.

Rows are hash-chained per employee and tax year. This table should have
no UPDATE or DELETE permissions; a correction is a new row.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from practice_payroll.models.base import BaseModel


class AuditEvent(str, Enum):
    """What produced the audit row."""
    CALCULATION = "calculation"
    REVERSAL = "reversal"


class PayrollAuditLog(BaseModel):
    """Immutable calculation record for one payroll entry."""
    
    __tablename__ = "payroll_audit_logs"
    
    practice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("practices.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    payroll_run_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payroll_runs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # Entries may be regenerated after a reversal; keep the id without a constraint
    payroll_entry_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
    )
    
    event: Mapped[AuditEvent] = mapped_column(SQLEnum(AuditEvent), nullable=False)
    tax_year: Mapped[str] = mapped_column(String(9), nullable=False)
    tax_table_version: Mapped[str] = mapped_column(String(64), nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(
        Integer, nullable=False,
        comment="Position in the employee's chain for the tax year",
    )
    
    # Headline figures (signed; reversals are negative)
    gross_remuneration: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    taxable_income: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    paye: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    uif_employee: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    uif_employer: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    sdl: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    net_salary: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    
    input_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    calculation: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recorded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    
    # Integrity
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    content_hash: Mapped[str] = mapped_column(
        String(64), nullable=False,
        comment="SHA-256 of the row content and previous_hash",
    )
    
    __table_args__ = (
        UniqueConstraint('employee_id', 'tax_year', 'sequence', name='uq_payroll_audit_chain_position'),
        Index('ix_payroll_audit_run', 'payroll_run_id', 'created_at'),
    )
    
    def __repr__(self) -> str:
        return f"<PayrollAuditLog(event={self.event}, employee={self.employee_id}, seq={self.sequence})>"
