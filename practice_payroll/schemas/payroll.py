"""
Practice Payroll - Payroll Schemas

Pydantic data contracts passed between the payroll services.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from practice_payroll.models.employee import DeductionType, PayFrequency
from practice_payroll.models.payroll import LineItemKind, PaymentType, PayrollStatus


# ===========================================
# VALIDATION
# ===========================================

class ValidationSeverity(str, Enum):
    WARNING = "warning"
    # Blocks the PROCESS transition
    ERROR = "error"


class WarningCode(str, Enum):
    MISSING_BANKING_DETAILS = "MISSING_BANKING_DETAILS"
    NON_POSITIVE_NET = "NON_POSITIVE_NET"
    MISSING_DATE_OF_BIRTH = "MISSING_DATE_OF_BIRTH"
    RETIREMENT_ABOVE_LIMIT = "RETIREMENT_ABOVE_LIMIT"
    MISSING_TAX_NUMBER = "MISSING_TAX_NUMBER"
    IRREGULAR_PAYMENT_DROPPED = "IRREGULAR_PAYMENT_DROPPED"


class ValidationWarning(BaseModel):
    """Per-employee issue found while computing an entry; never aborts the run."""
    model_config = ConfigDict(frozen=True)
    
    employee_id: UUID
    employee_number: str
    code: WarningCode
    message: str
    severity: ValidationSeverity = ValidationSeverity.WARNING
    
    @property
    def is_blocking(self) -> bool:
        return self.severity == ValidationSeverity.ERROR


# ===========================================
# CALCULATION INPUTS
# ===========================================

class DeductionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)
    
    deduction_type: DeductionType
    description: str
    amount: Optional[Decimal] = None
    percentage: Optional[Decimal] = None
    reference_id: Optional[UUID] = None


class FringeBenefitSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)
    
    benefit_type: str
    description: str
    monthly_value: Decimal


class CompensationSnapshot(BaseModel):
    """
    Employee compensation frozen at generation time.
    
    Stored on the entry, so later HR changes never alter stored figures.
    """
    model_config = ConfigDict(frozen=True)
    
    employee_id: UUID
    employee_number: str
    full_name: str
    tax_number: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    pay_frequency: PayFrequency = PayFrequency.MONTHLY
    contractual_salary: Decimal
    gross_monthly: Decimal
    uif_exempt: bool = False
    uif_exemption_reason: Optional[str] = None
    paye_override: Optional[Decimal] = None
    medical_aid_dependants: int = 0
    deductions: List[DeductionSnapshot] = Field(default_factory=list)
    fringe_benefits: List[FringeBenefitSnapshot] = Field(default_factory=list)
    has_banking_details: bool = False
    
    @property
    def is_medical_aid_member(self) -> bool:
        return any(d.deduction_type == DeductionType.MEDICAL_AID for d in self.deductions)


class AdditionInput(BaseModel):
    """Irregular payment fed into an entry calculation."""
    model_config = ConfigDict(frozen=True)
    
    description: str
    amount: Decimal = Field(gt=0)
    payment_type: PaymentType = PaymentType.BONUS
    reference_id: Optional[UUID] = None


class AdvanceInput(BaseModel):
    """Approved pay advance recovered by an entry."""
    model_config = ConfigDict(frozen=True)
    
    advance_id: UUID
    amount: Decimal = Field(gt=0)


# ===========================================
# CALCULATION OUTPUT
# ===========================================

class LineItem(BaseModel):
    """
    One tagged line of a payroll entry.
    
    kind is a closed set; employer contributions carry
    is_employer_contribution=True and never reduce net pay.
    """
    model_config = ConfigDict(frozen=True)
    
    kind: LineItemKind
    label: str
    amount: Decimal
    is_employer_contribution: bool = False
    reference_id: Optional[UUID] = None


class EntryCalculation(BaseModel):
    """Result of calculating one employee's payroll entry."""
    model_config = ConfigDict(frozen=True)
    
    employee_id: UUID
    gross_salary: Decimal
    total_additions: Decimal
    fringe_benefits: Decimal
    taxable_income: Decimal
    paye_amount: Decimal
    uif_amount: Decimal
    pension_amount: Decimal
    medical_aid_amount: Decimal
    other_deductions: Decimal
    pay_advance_amount: Decimal
    total_deductions: Decimal
    net_salary: Decimal
    medical_tax_credit: Decimal
    employer_uif: Decimal
    employer_sdl: Decimal
    line_items: List[LineItem]
    warnings: List[ValidationWarning]
    calculation: Dict[str, Any]
    
    @property
    def payslip_blocked(self) -> bool:
        return any(w.code == WarningCode.MISSING_BANKING_DETAILS for w in self.warnings)


class RunTotals(BaseModel):
    employee_count: int = 0
    total_gross: Decimal = Decimal("0.00")
    total_additions: Decimal = Decimal("0.00")
    total_paye: Decimal = Decimal("0.00")
    total_uif_employee: Decimal = Decimal("0.00")
    total_deductions: Decimal = Decimal("0.00")
    total_net: Decimal = Decimal("0.00")
    total_employer_uif: Decimal = Decimal("0.00")
    total_employer_sdl: Decimal = Decimal("0.00")


class GenerationResult(BaseModel):
    """Outcome of generating (or regenerating) a DRAFT payroll run."""
    run_id: UUID
    practice_id: UUID
    month: int
    year: int
    tax_year: str
    status: PayrollStatus
    generation: int
    totals: RunTotals
    warnings: List[ValidationWarning] = Field(default_factory=list)
    
    @property
    def has_blocking_issues(self) -> bool:
        return any(w.is_blocking for w in self.warnings)


class PayrollRegisterRow(BaseModel):
    """One employee line of the accountant's payroll register."""
    employee_number: str
    employee_name: str
    gross_salary: Decimal
    total_additions: Decimal
    paye: Decimal
    uif_employee: Decimal
    pension: Decimal
    medical_aid: Decimal
    other_deductions: Decimal
    pay_advance: Decimal
    total_deductions: Decimal
    net_salary: Decimal
    uif_employer: Decimal
    sdl_employer: Decimal


class BankScheduleRow(BaseModel):
    employee_number: str
    employee_name: str
    bank_name: Optional[str] = None
    branch_code: Optional[str] = None
    account_number: Optional[str] = None
    account_type: Optional[str] = None
    amount: Decimal
    reference: str
