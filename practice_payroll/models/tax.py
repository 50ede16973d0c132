"""
Practice Payroll - Tax Configuration Models

SARS tax tables and statutory contribution rates.

A TaxYear covers 1 March to the last day of February and carries its
bracket table, rebates, tax thresholds and medical scheme fees tax
credits. Once published it is immutable: historical payroll must always
reproduce with the table that was in force at the time.

StatutoryRate rows bind UIF and SDL rates to an effective date range.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Numeric, String, Text, Uuid,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from practice_payroll.models.base import BaseModel, AuditMixin


# ===========================================
# TAX YEAR
# ===========================================

class TaxYear(BaseModel, AuditMixin):
    """Published SARS tax table for one tax year, e.g. '2024/2025'."""
    
    __tablename__ = "tax_years"
    
    label: Mapped[str] = mapped_column(
        String(9), nullable=False, unique=True,
        comment="Tax year label e.g. 2024/2025",
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Rebates (annual)
    primary_rebate: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    secondary_rebate: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False,
        comment="Additional rebate from age 65",
    )
    tertiary_rebate: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False,
        comment="Additional rebate from age 75",
    )
    
    # Tax thresholds (annual income at or below which no tax is payable)
    threshold_under_65: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    threshold_65_to_74: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    threshold_75_and_over: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    
    # Medical scheme fees tax credits (monthly)
    medical_credit_main: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0"),
    )
    medical_credit_first_dependant: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0"),
    )
    medical_credit_additional: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0"),
    )
    
    # Publication
    is_published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True,
        comment="SHA-256 of the canonical table content, stamped on publish",
    )
    
    brackets: Mapped[List["TaxBracket"]] = relationship(
        "TaxBracket",
        back_populates="tax_year",
        cascade="all, delete-orphan",
        order_by="TaxBracket.lower_bound",
        lazy="selectin",
    )
    
    __table_args__ = (
        CheckConstraint('end_date > start_date', name='ck_tax_year_dates'),
    )
    
    def __repr__(self) -> str:
        return f"<TaxYear(label={self.label}, published={self.is_published})>"


class TaxBracket(BaseModel):
    """
    One marginal band of a tax table.
    
    Tax within the band is base_tax + (income - lower_bound) * rate,
    for lower_bound < income <= upper_bound.
    """
    
    __tablename__ = "tax_brackets"
    
    tax_year_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("tax_years.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lower_bound: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    upper_bound: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(15, 2), nullable=True,
        comment="NULL for the top band",
    )
    rate: Mapped[Decimal] = mapped_column(
        Numeric(7, 4), nullable=False,
        comment="Marginal rate as a fraction e.g. 0.1800",
    )
    base_tax: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(15, 2), nullable=True,
        comment="Published tax on lower_bound, checked against the computed value",
    )
    
    tax_year: Mapped["TaxYear"] = relationship("TaxYear", back_populates="brackets")
    
    __table_args__ = (
        UniqueConstraint('tax_year_id', 'lower_bound', name='uq_tax_bracket_year_lower'),
    )


# ===========================================
# STATUTORY CONTRIBUTION RATES
# ===========================================

class StatutoryRate(BaseModel, AuditMixin):
    """UIF and SDL rates in force for an effective date range."""
    
    __tablename__ = "statutory_rates"
    
    effective_from: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    effective_to: Mapped[Optional[date]] = mapped_column(
        Date, nullable=True,
        comment="NULL while the rate is current",
    )
    uif_rate: Mapped[Decimal] = mapped_column(
        Numeric(7, 4), nullable=False,
        comment="Employee UIF rate; the employer matches it",
    )
    uif_monthly_cap: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False,
        comment="Maximum monthly UIF contribution per party",
    )
    sdl_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    def covers(self, on_date: date) -> bool:
        if on_date < self.effective_from:
            return False
        return self.effective_to is None or on_date <= self.effective_to
