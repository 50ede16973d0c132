"""
Practice Payroll - Schemas Package

Pydantic data contracts passed between services and to collaborators.
"""

from practice_payroll.schemas.payroll import (
    # Validation
    ValidationSeverity,
    WarningCode,
    ValidationWarning,
    # Calculation inputs
    CompensationSnapshot,
    DeductionSnapshot,
    FringeBenefitSnapshot,
    AdditionInput,
    AdvanceInput,
    # Calculation output
    LineItem,
    EntryCalculation,
    RunTotals,
    GenerationResult,
    BankScheduleRow,
    PayrollRegisterRow,
)
from practice_payroll.schemas.ytd import YTDFigures, YTDDiscrepancy
from practice_payroll.schemas.reports import (
    DeclarationRow,
    MonthlyDeclaration,
    ReconciliationPeriod,
    ReconciliationDiscrepancy,
    EmployeeReconciliation,
    AnnualReconciliation,
    TaxCertificate,
)
from practice_payroll.schemas.payslip import PayslipLine, PayslipData

__all__ = [
    "ValidationSeverity",
    "WarningCode",
    "ValidationWarning",
    "CompensationSnapshot",
    "DeductionSnapshot",
    "FringeBenefitSnapshot",
    "AdditionInput",
    "AdvanceInput",
    "LineItem",
    "EntryCalculation",
    "RunTotals",
    "GenerationResult",
    "BankScheduleRow",
    "PayrollRegisterRow",
    "YTDFigures",
    "YTDDiscrepancy",
    "DeclarationRow",
    "MonthlyDeclaration",
    "ReconciliationPeriod",
    "ReconciliationDiscrepancy",
    "EmployeeReconciliation",
    "AnnualReconciliation",
    "TaxCertificate",
    "PayslipLine",
    "PayslipData",
]
