"""
Practice Payroll - Compliance Report Schemas

Read-only projections for the employer filings:
- MonthlyDeclaration: EMP201 equivalent
- AnnualReconciliation: EMP501 equivalent
- TaxCertificate: IRP5 equivalent
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from practice_payroll.models.payroll import PayrollStatus


ZERO = Decimal("0.00")


# ===========================================
# MONTHLY DECLARATION
# ===========================================

class DeclarationRow(BaseModel):
    """One employee's contribution to a monthly declaration."""
    employee_id: UUID
    employee_number: str
    employee_name: str
    tax_number: Optional[str] = None
    gross_remuneration: Decimal
    taxable_income: Decimal
    paye: Decimal
    uif_employee: Decimal
    uif_employer: Decimal
    sdl: Decimal


class MonthlyDeclaration(BaseModel):
    practice_id: UUID
    practice_name: str
    paye_reference: Optional[str] = None
    uif_reference: Optional[str] = None
    sdl_reference: Optional[str] = None
    month: int
    year: int
    tax_year: str
    period_end: date
    due_date: date
    payroll_run_id: Optional[UUID] = None
    run_status: Optional[PayrollStatus] = None
    submitted_at: Optional[datetime] = None
    rows: List[DeclarationRow] = Field(default_factory=list)
    total_paye: Decimal = ZERO
    total_uif_employee: Decimal = ZERO
    total_uif_employer: Decimal = ZERO
    total_sdl: Decimal = ZERO

    @property
    def total_uif(self) -> Decimal:
        return self.total_uif_employee + self.total_uif_employer

    @property
    def total_liability(self) -> Decimal:
        """Amount payable to the revenue service for the month."""
        return self.total_paye + self.total_uif + self.total_sdl

    @property
    def is_nil_return(self) -> bool:
        return not self.rows


# ===========================================
# ANNUAL RECONCILIATION
# ===========================================

class ReconciliationPeriod(BaseModel):
    period_number: int
    month: int
    year: int
    run_status: Optional[PayrollStatus] = None
    employee_count: int = 0
    paye: Decimal = ZERO
    uif_employee: Decimal = ZERO
    uif_employer: Decimal = ZERO
    sdl: Decimal = ZERO

    @property
    def total_liability(self) -> Decimal:
        return self.paye + self.uif_employee + self.uif_employer + self.sdl


class ReconciliationDiscrepancy(BaseModel):
    """Declared total that does not match the YTD ledger beyond tolerance."""
    employee_id: Optional[UUID] = None
    employee_number: Optional[str] = None
    field: str
    declared: Decimal
    ytd: Decimal

    @property
    def difference(self) -> Decimal:
        return self.declared - self.ytd


class EmployeeReconciliation(BaseModel):
    employee_id: UUID
    employee_number: str
    employee_name: str
    tax_number: Optional[str] = None
    periods_declared: int = 0
    declared_gross: Decimal = ZERO
    declared_paye: Decimal = ZERO
    declared_uif_employee: Decimal = ZERO
    declared_uif_employer: Decimal = ZERO
    declared_sdl: Decimal = ZERO
    ytd_gross: Decimal = ZERO
    ytd_paye: Decimal = ZERO
    ytd_uif_employee: Decimal = ZERO
    ytd_uif_employer: Decimal = ZERO
    ytd_sdl: Decimal = ZERO

    def difference(self, field: str) -> Decimal:
        return getattr(self, f"declared_{field}") - getattr(self, f"ytd_{field}")


class AnnualReconciliation(BaseModel):
    practice_id: UUID
    practice_name: str
    paye_reference: Optional[str] = None
    tax_year: str
    tolerance: Decimal
    periods: List[ReconciliationPeriod] = Field(default_factory=list)
    employees: List[EmployeeReconciliation] = Field(default_factory=list)
    declared_paye: Decimal = ZERO
    declared_uif_employee: Decimal = ZERO
    declared_uif_employer: Decimal = ZERO
    declared_sdl: Decimal = ZERO
    ytd_paye: Decimal = ZERO
    ytd_uif_employee: Decimal = ZERO
    ytd_uif_employer: Decimal = ZERO
    ytd_sdl: Decimal = ZERO
    discrepancies: List[ReconciliationDiscrepancy] = Field(default_factory=list)

    @property
    def declared_total(self) -> Decimal:
        return sum((p.total_liability for p in self.periods), ZERO)

    @property
    def ytd_total(self) -> Decimal:
        return self.ytd_paye + self.ytd_uif_employee + self.ytd_uif_employer + self.ytd_sdl

    @property
    def is_reconciled(self) -> bool:
        return not self.discrepancies

    @property
    def missing_periods(self) -> List[int]:
        """Tax periods without a processed or paid run."""
        return [p.period_number for p in self.periods if p.run_status is None]


# ===========================================
# TAX CERTIFICATE
# ===========================================

class TaxCertificate(BaseModel):
    """
    Employee tax certificate for one tax year.

    The certificate number is deterministic: start year, two-digit end
    year and the employee number, e.g. 202425-EMP001.
    """
    certificate_number: str
    tax_year: str
    period_start: date
    period_end: date
    issued_on: date

    # Employer
    practice_id: UUID
    practice_name: str
    paye_reference: Optional[str] = None

    # Employee
    employee_id: UUID
    employee_number: str
    full_name: str
    id_number: Optional[str] = None
    tax_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    bank_name: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_branch_code: Optional[str] = None

    # Figures
    periods_employed: int = 0
    total_income: Decimal = ZERO
    taxable_income: Decimal = ZERO
    fringe_benefits: Decimal = ZERO
    total_paye: Decimal = ZERO
    total_uif: Decimal = ZERO
    retirement_contributions: Decimal = ZERO
    medical_aid_contributions: Decimal = ZERO
    medical_tax_credits: Decimal = ZERO
    total_deductions: Decimal = ZERO
    net_pay: Decimal = ZERO
