"""
Practice Payroll - Services Package

Business logic services.
"""

from practice_payroll.services.tax_calculators import (
    PAYECalculator,
    TaxTable,
    TaxTableService,
    StatutoryRates,
    StatutoryRateService,
)
from practice_payroll.services.payroll_service import PayrollService, calculate_entry
from practice_payroll.services.pay_advance_service import PayAdvanceService
from practice_payroll.services.ytd_service import YTDService
from practice_payroll.services.audit_service import PayrollAuditService
from practice_payroll.services.compliance_report_service import ComplianceReportService
from practice_payroll.services.payslip_service import PayslipService
from practice_payroll.services.pdf_service import PayrollPDFService

__all__ = [
    "PAYECalculator",
    "TaxTable",
    "TaxTableService",
    "StatutoryRates",
    "StatutoryRateService",
    "PayrollService",
    "calculate_entry",
    "PayAdvanceService",
    "YTDService",
    "PayrollAuditService",
    "ComplianceReportService",
    "PayslipService",
    "PayrollPDFService",
]
