"""
Practice Payroll - Database Models

All SQLAlchemy models are imported here so the metadata knows every table.
"""

from practice_payroll.models.base import BaseModel, TimestampMixin, AuditMixin
from practice_payroll.models.tax import TaxYear, TaxBracket, StatutoryRate
from practice_payroll.models.employee import (
    Practice,
    Employee,
    EmployeeDeduction,
    EmployeeFringeBenefit,
    EmploymentStatus,
    PayFrequency,
    DeductionType,
)
from practice_payroll.models.payroll import (
    PayrollRun,
    PayrollEntry,
    PayrollAddition,
    PayrollLineItem,
    PayrollStatus,
    PaymentType,
    LineItemKind,
)
from practice_payroll.models.pay_advance import PayAdvance, PayAdvanceStatus
from practice_payroll.models.ytd import EmployeeYTD, YTD_FIELDS
from practice_payroll.models.audit import PayrollAuditLog, AuditEvent

__all__ = [
    # Base
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    # Tax configuration
    "TaxYear",
    "TaxBracket",
    "StatutoryRate",
    # Employer / employee
    "Practice",
    "Employee",
    "EmployeeDeduction",
    "EmployeeFringeBenefit",
    "EmploymentStatus",
    "PayFrequency",
    "DeductionType",
    # Payroll
    "PayrollRun",
    "PayrollEntry",
    "PayrollAddition",
    "PayrollLineItem",
    "PayrollStatus",
    "PaymentType",
    "LineItemKind",
    "PayAdvance",
    "PayAdvanceStatus",
    # YTD and audit
    "EmployeeYTD",
    "YTD_FIELDS",
    "PayrollAuditLog",
    "AuditEvent",
]
