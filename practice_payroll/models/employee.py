"""
Practice Payroll - Employer and Employee Models

Employee master data is owned by HR workflows outside the payroll core.
The payroll engine only reads it, snapshotting compensation into each
payroll entry so later HR changes never alter a finalized run.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, Date, ForeignKey, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from practice_payroll.models.base import BaseModel, AuditMixin
from practice_payroll.utils.money import round_cents, to_decimal

if TYPE_CHECKING:
    from practice_payroll.models.payroll import PayrollRun


# ===========================================
# ENUMS
# ===========================================

class EmploymentStatus(str, Enum):
    """Employment status."""
    ACTIVE = "active"
    ON_LEAVE = "on_leave"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"
    RESIGNED = "resigned"


class PayFrequency(str, Enum):
    """How often the contractual salary figure is paid."""
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"

    @property
    def periods_per_year(self) -> int:
        return {"weekly": 52, "fortnightly": 26, "monthly": 12}[self.value]


class DeductionType(str, Enum):
    """Recurring deduction categories."""
    PENSION = "pension"
    MEDICAL_AID = "medical_aid"
    OTHER = "other"


# ===========================================
# PRACTICE (EMPLOYER)
# ===========================================

class Practice(BaseModel):
    """Healthcare practice acting as the employer for payroll purposes."""
    
    __tablename__ = "practices"
    
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    trading_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    paye_reference_number: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True,
        comment="SARS PAYE reference (7xxxxxxxxx)",
    )
    uif_reference_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    sdl_reference_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    sdl_exempt: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Employer exempt from SDL (annual payroll under the SARS limit)",
    )
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    employees: Mapped[List["Employee"]] = relationship(
        "Employee",
        back_populates="practice",
        cascade="all, delete-orphan",
    )
    payroll_runs: Mapped[List["PayrollRun"]] = relationship(
        "PayrollRun",
        back_populates="practice",
        cascade="all, delete-orphan",
    )


# ===========================================
# EMPLOYEE
# ===========================================

class Employee(BaseModel, AuditMixin):
    """
    Employee with compensation and banking details.
    
    SARS Compliance Fields:
    - tax_number - Income tax reference, required before payroll is processed
    - id_number - SA identity number, printed on the IRP5
    - date_of_birth - Drives the secondary and tertiary rebates
    """
    
    __tablename__ = "employees"
    
    practice_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("practices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    
    # Employee identification
    employee_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Internal staff number",
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    id_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    tax_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    
    # Employment
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    employment_status: Mapped[EmploymentStatus] = mapped_column(
        SQLEnum(EmploymentStatus),
        default=EmploymentStatus.ACTIVE,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    # Compensation
    gross_salary: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(15, 2), nullable=True,
        comment="Contractual salary per pay_frequency period",
    )
    pay_frequency: Mapped[PayFrequency] = mapped_column(
        SQLEnum(PayFrequency),
        default=PayFrequency.MONTHLY,
        nullable=False,
    )
    uif_exempt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    uif_exemption_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    paye_override: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(15, 2), nullable=True,
        comment="Fixed monthly PAYE directive replacing the table calculation",
    )
    medical_aid_dependants: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False,
        comment="Dependants on the medical scheme, excluding the main member",
    )
    
    # Banking
    bank_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    bank_account_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    bank_branch_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    bank_account_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    bank_account_holder: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Relationships
    practice: Mapped["Practice"] = relationship("Practice", back_populates="employees")
    deductions: Mapped[List["EmployeeDeduction"]] = relationship(
        "EmployeeDeduction",
        back_populates="employee",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    fringe_benefits: Mapped[List["EmployeeFringeBenefit"]] = relationship(
        "EmployeeFringeBenefit",
        back_populates="employee",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    
    __table_args__ = (
        UniqueConstraint('practice_id', 'employee_number', name='uq_employee_practice_number'),
    )
    
    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
    
    @property
    def has_banking_details(self) -> bool:
        return bool(self.bank_account_number and self.bank_branch_code)
    
    @property
    def monthly_salary(self) -> Optional[Decimal]:
        """Contractual salary converted to a monthly equivalent."""
        if self.gross_salary is None:
            return None
        return round_cents(to_decimal(self.gross_salary) * self.pay_frequency.periods_per_year / 12)
    
    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, employee_number={self.employee_number}, name={self.full_name})>"


class EmployeeDeduction(BaseModel):
    """Recurring deduction: either a fixed amount or a percentage of gross."""
    
    __tablename__ = "employee_deductions"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    deduction_type: Mapped[DeductionType] = mapped_column(SQLEnum(DeductionType), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2), nullable=True)
    percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(7, 4), nullable=True,
        comment="Fraction of gross salary e.g. 0.0750",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    
    employee: Mapped["Employee"] = relationship("Employee", back_populates="deductions")
    
    def applies_on(self, on_date: date) -> bool:
        if not self.is_active:
            return False
        if self.effective_from and on_date < self.effective_from:
            return False
        return not (self.effective_to and on_date > self.effective_to)


class EmployeeFringeBenefit(BaseModel):
    """Taxable non-cash benefit (company car, housing, low-interest loan)."""
    
    __tablename__ = "employee_fringe_benefits"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    benefit_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    monthly_value: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False,
        comment="Monthly taxable value",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    
    employee: Mapped["Employee"] = relationship("Employee", back_populates="fringe_benefits")
    
    def applies_on(self, on_date: date) -> bool:
        if not self.is_active:
            return False
        if self.effective_from and on_date < self.effective_from:
            return False
        return not (self.effective_to and on_date > self.effective_to)
