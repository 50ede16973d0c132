"""
Practice Payroll - Payslip Schemas

Data contract handed to payslip renderers.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from practice_payroll.models.payroll import LineItemKind, PayrollStatus
from practice_payroll.schemas.ytd import YTDFigures


class PayslipLine(BaseModel):
    # None for basic salary
    kind: Optional[LineItemKind] = None
    label: str
    amount: Decimal


class PayslipData(BaseModel):
    """
    Everything a payslip shows, for one payroll entry.

    delivery_blocked is set when the employee has no usable banking
    details; the payslip can still be rendered for the practice's records.
    """
    entry_id: UUID
    payroll_run_id: UUID
    run_status: PayrollStatus

    # Employer
    practice_name: str
    paye_reference: Optional[str] = None

    # Employee
    employee_id: UUID
    employee_number: str
    employee_name: str
    tax_number: Optional[str] = None
    id_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_account_masked: Optional[str] = None

    # Period
    month: int
    year: int
    period_label: str
    tax_year: str
    payment_date: Optional[date] = None

    # Lines
    earnings: List[PayslipLine] = Field(default_factory=list)
    deductions: List[PayslipLine] = Field(default_factory=list)
    employer_contributions: List[PayslipLine] = Field(default_factory=list)

    # Totals
    total_earnings: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    taxable_income: Decimal
    fringe_benefits: Decimal = Decimal("0.00")
    medical_tax_credit: Decimal = Decimal("0.00")

    ytd: YTDFigures
    delivery_blocked: bool = False
    warnings: List[str] = Field(default_factory=list)
