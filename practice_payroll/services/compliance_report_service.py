"""
Practice Payroll - Compliance Report Service

Employer filings produced from processed payroll:
- Monthly declaration (EMP201 equivalent): PAYE, UIF and SDL payable for a month
- Annual reconciliation (EMP501 equivalent): twelve declarations against YTD ledgers
- Employee tax certificate (IRP5 equivalent)

Every report is a read-only projection; nothing here writes payroll data.
Discrepancies are reported, never corrected.

Flat-file exports use a fixed column order, amounts with two fraction
digits and ISO 8601 dates.
"""

import csv
import io
import logging
import uuid
from calendar import monthrange
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.config import settings
from practice_payroll.exceptions import NotFoundError
from practice_payroll.models.employee import Employee, Practice
from practice_payroll.models.payroll import PayrollRun
from practice_payroll.schemas.payroll import BankScheduleRow, PayrollRegisterRow
from practice_payroll.schemas.reports import (
    AnnualReconciliation,
    DeclarationRow,
    EmployeeReconciliation,
    MonthlyDeclaration,
    ReconciliationDiscrepancy,
    ReconciliationPeriod,
    TaxCertificate,
)
from practice_payroll.services.pdf_service import PayrollPDFService
from practice_payroll.services.tax_calculators.paye_service import (
    MONTHS_PER_YEAR,
    calendar_month_for_period,
    tax_year_bounds,
    tax_year_label_for,
)
from practice_payroll.services.ytd_service import FINALIZED_STATUSES, YTDService
from practice_payroll.utils.money import format_amount, round_cents, sum_cents

logger = logging.getLogger(__name__)


# Declared figure -> EmployeeYTD column
RECONCILED_FIELDS = (
    ("gross", "ytd_gross"),
    ("paye", "ytd_paye"),
    ("uif_employee", "ytd_uif_employee"),
    ("uif_employer", "ytd_uif_employer"),
    ("sdl", "ytd_sdl"),
)


def declaration_due_date(year: int, month: int) -> date:
    """Declarations are due on the configured day of the following month."""
    if month == 12:
        return date(year + 1, 1, settings.declaration_due_day)
    return date(year, month + 1, settings.declaration_due_day)


def certificate_number(tax_year: str, employee_number: str) -> str:
    """e.g. 202425-EMP001 for tax year 2024/2025."""
    start, end = tax_year_bounds(tax_year)
    return f"{start.year}{end.year % 100:02d}-{employee_number}"


class ComplianceReportService:
    """Read-only compliance reports for a practice."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ytd = YTDService(db)

    async def _get_practice(self, practice_id: uuid.UUID) -> Practice:
        practice = await self.db.get(Practice, practice_id)
        if practice is None:
            raise NotFoundError("Practice", practice_id)
        return practice

    async def _finalized_runs(
        self,
        practice_id: uuid.UUID,
        tax_year: str,
    ) -> Dict[Tuple[int, int], PayrollRun]:
        result = await self.db.execute(
            select(PayrollRun).where(
                and_(
                    PayrollRun.practice_id == practice_id,
                    PayrollRun.tax_year == tax_year,
                    PayrollRun.status.in_(FINALIZED_STATUSES),
                )
            )
        )
        return {(run.year, run.month): run for run in result.scalars().all()}

    # ===========================================
    # MONTHLY DECLARATION
    # ===========================================

    async def monthly_declaration(
        self,
        practice_id: uuid.UUID,
        month: int,
        year: int,
    ) -> MonthlyDeclaration:
        """
        PAYE, UIF and SDL payable for one month.

        Only a PROCESSED or PAID run is declared; a month without one gives
        a nil declaration.
        """
        practice = await self._get_practice(practice_id)
        label = tax_year_label_for(year, month)
        runs = await self._finalized_runs(practice_id, label)
        return self._build_declaration(practice, label, month, year, runs.get((year, month)))

    @staticmethod
    def _build_declaration(
        practice: Practice,
        label: str,
        month: int,
        year: int,
        run: Optional[PayrollRun],
    ) -> MonthlyDeclaration:
        rows = []
        if run is not None:
            for entry in sorted(run.entries, key=lambda e: e.employee.employee_number):
                employee = entry.employee
                rows.append(DeclarationRow(
                    employee_id=employee.id,
                    employee_number=employee.employee_number,
                    employee_name=employee.full_name,
                    tax_number=employee.tax_number,
                    gross_remuneration=round_cents(entry.gross_salary + entry.total_additions),
                    taxable_income=round_cents(entry.taxable_income),
                    paye=round_cents(entry.paye_amount),
                    uif_employee=round_cents(entry.uif_amount),
                    uif_employer=round_cents(entry.employer_uif),
                    sdl=round_cents(entry.employer_sdl),
                ))

        return MonthlyDeclaration(
            practice_id=practice.id,
            practice_name=practice.name,
            paye_reference=practice.paye_reference_number,
            uif_reference=practice.uif_reference_number,
            sdl_reference=practice.sdl_reference_number,
            month=month,
            year=year,
            tax_year=label,
            period_end=date(year, month, monthrange(year, month)[1]),
            due_date=declaration_due_date(year, month),
            payroll_run_id=run.id if run else None,
            run_status=run.status if run else None,
            submitted_at=run.declaration_submitted_at if run else None,
            rows=rows,
            total_paye=sum_cents(r.paye for r in rows),
            total_uif_employee=sum_cents(r.uif_employee for r in rows),
            total_uif_employer=sum_cents(r.uif_employer for r in rows),
            total_sdl=sum_cents(r.sdl for r in rows),
        )

    # ===========================================
    # ANNUAL RECONCILIATION
    # ===========================================

    async def annual_reconciliation(
        self,
        practice_id: uuid.UUID,
        tax_year: str,
        tolerance: Optional[Decimal] = None,
    ) -> AnnualReconciliation:
        """
        Sum the twelve monthly declarations of a tax year and compare them
        with the YTD ledgers, per employee and for the practice.

        Per-employee figures must agree within `tolerance`; the practice
        totals within `tolerance` per employee.
        """
        practice = await self._get_practice(practice_id)
        tolerance = settings.reconciliation_tolerance if tolerance is None else tolerance

        runs = await self._finalized_runs(practice_id, tax_year)

        periods = []
        declared: Dict[uuid.UUID, EmployeeReconciliation] = {}
        for number in range(1, MONTHS_PER_YEAR + 1):
            year, month = calendar_month_for_period(tax_year, number)
            declaration = self._build_declaration(practice, tax_year, month, year, runs.get((year, month)))
            periods.append(ReconciliationPeriod(
                period_number=number,
                month=month,
                year=year,
                run_status=declaration.run_status,
                employee_count=len(declaration.rows),
                paye=declaration.total_paye,
                uif_employee=declaration.total_uif_employee,
                uif_employer=declaration.total_uif_employer,
                sdl=declaration.total_sdl,
            ))
            for row in declaration.rows:
                employee = declared.get(row.employee_id)
                if employee is None:
                    employee = declared[row.employee_id] = EmployeeReconciliation(
                        employee_id=row.employee_id,
                        employee_number=row.employee_number,
                        employee_name=row.employee_name,
                        tax_number=row.tax_number,
                    )
                employee.periods_declared += 1
                employee.declared_gross += row.gross_remuneration
                employee.declared_paye += row.paye
                employee.declared_uif_employee += row.uif_employee
                employee.declared_uif_employer += row.uif_employer
                employee.declared_sdl += row.sdl

        for ledger in await self.ytd.list_practice_ledgers(practice_id, tax_year):
            employee = declared.get(ledger.employee_id)
            if employee is None:
                staff = ledger.employee
                employee = declared[ledger.employee_id] = EmployeeReconciliation(
                    employee_id=staff.id,
                    employee_number=staff.employee_number,
                    employee_name=staff.full_name,
                    tax_number=staff.tax_number,
                )
            for declared_field, ytd_field in RECONCILED_FIELDS:
                setattr(employee, ytd_field, round_cents(getattr(ledger, ytd_field)))

        employees = sorted(declared.values(), key=lambda e: e.employee_number)
        discrepancies = []
        for employee in employees:
            for declared_field, ytd_field in RECONCILED_FIELDS:
                if abs(employee.difference(declared_field)) > tolerance:
                    discrepancies.append(ReconciliationDiscrepancy(
                        employee_id=employee.employee_id,
                        employee_number=employee.employee_number,
                        field=declared_field,
                        declared=getattr(employee, f"declared_{declared_field}"),
                        ytd=getattr(employee, ytd_field),
                    ))

        totals = {}
        practice_tolerance = tolerance * max(len(employees), 1)
        for declared_field, ytd_field in RECONCILED_FIELDS[1:]:
            totals[f"declared_{declared_field}"] = sum_cents(
                getattr(e, f"declared_{declared_field}") for e in employees
            )
            totals[ytd_field] = sum_cents(getattr(e, ytd_field) for e in employees)
            difference = totals[f"declared_{declared_field}"] - totals[ytd_field]
            if abs(difference) > practice_tolerance:
                discrepancies.append(ReconciliationDiscrepancy(
                    field=declared_field,
                    declared=totals[f"declared_{declared_field}"],
                    ytd=totals[ytd_field],
                ))

        reconciliation = AnnualReconciliation(
            practice_id=practice.id,
            practice_name=practice.name,
            paye_reference=practice.paye_reference_number,
            tax_year=tax_year,
            tolerance=tolerance,
            periods=periods,
            employees=employees,
            discrepancies=discrepancies,
            **totals,
        )

        if discrepancies:
            logger.warning(
                f"Annual reconciliation for practice {practice_id} in {tax_year} "
                f"has {len(discrepancies)} discrepancy(ies)"
            )
        return reconciliation

    # ===========================================
    # TAX CERTIFICATE
    # ===========================================

    async def tax_certificate(
        self,
        employee_id: uuid.UUID,
        tax_year: str,
        issued_on: Optional[date] = None,
    ) -> TaxCertificate:
        """Employee tax certificate from the YTD ledger of a tax year."""
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        ledger = await self.ytd.get_ledger(employee_id, tax_year)
        if ledger is None:
            raise NotFoundError(f"YTD figures for {tax_year} of employee", employee_id)
        practice = await self._get_practice(employee.practice_id)
        period_start, period_end = tax_year_bounds(tax_year)

        return TaxCertificate(
            certificate_number=certificate_number(tax_year, employee.employee_number),
            tax_year=tax_year,
            period_start=period_start,
            period_end=period_end,
            issued_on=issued_on or date.today(),
            practice_id=practice.id,
            practice_name=practice.name,
            paye_reference=practice.paye_reference_number,
            employee_id=employee.id,
            employee_number=employee.employee_number,
            full_name=employee.full_name,
            id_number=employee.id_number,
            tax_number=employee.tax_number,
            date_of_birth=employee.date_of_birth,
            bank_name=employee.bank_name,
            bank_account_number=employee.bank_account_number,
            bank_branch_code=employee.bank_branch_code,
            periods_employed=ledger.periods_processed,
            total_income=round_cents(ledger.ytd_gross),
            taxable_income=round_cents(ledger.ytd_taxable_income),
            fringe_benefits=round_cents(ledger.ytd_fringe_benefits),
            total_paye=round_cents(ledger.ytd_paye),
            total_uif=round_cents(ledger.ytd_uif_employee),
            retirement_contributions=round_cents(ledger.ytd_pension),
            medical_aid_contributions=round_cents(ledger.ytd_medical_aid),
            medical_tax_credits=round_cents(ledger.ytd_medical_credits),
            total_deductions=round_cents(ledger.ytd_total_deductions),
            net_pay=round_cents(ledger.ytd_net),
        )


# ===========================================
# FLAT-FILE EXPORT
# ===========================================

DECLARATION_COLUMNS = [
    "period", "employee_number", "employee_name", "tax_number",
    "gross_remuneration", "taxable_income", "paye", "uif_employee", "uif_employer", "sdl",
]

RECONCILIATION_COLUMNS = [
    "tax_year", "period_number", "period", "run_status", "employee_count",
    "paye", "uif_employee", "uif_employer", "sdl", "total_liability",
]

CERTIFICATE_COLUMNS = [
    "certificate_number", "tax_year", "period_start", "period_end", "issued_on",
    "paye_reference", "employee_number", "full_name", "id_number", "tax_number",
    "date_of_birth", "periods_employed", "total_income", "taxable_income",
    "fringe_benefits", "retirement_contributions", "medical_aid_contributions",
    "medical_tax_credits", "total_paye", "total_uif", "total_deductions", "net_pay",
]

BANK_SCHEDULE_COLUMNS = [
    "employee_number", "employee_name", "bank_name", "branch_code",
    "account_number", "account_type", "amount", "reference",
]


PAYROLL_REGISTER_COLUMNS = [
    "employee_number", "employee_name", "gross_salary", "total_additions", "paye",
    "uif_employee", "pension", "medical_aid", "other_deductions", "pay_advance",
    "total_deductions", "net_salary", "uif_employer", "sdl_employer",
]


def _csv_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _write_csv(columns: Sequence[str], rows: Sequence[Sequence]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_csv_value(v) for v in row])
    return buffer.getvalue().encode('utf-8')


def declaration_to_csv(declaration: MonthlyDeclaration) -> Tuple[bytes, str]:
    """One row per employee, in employee number order."""
    period = f"{declaration.year}-{declaration.month:02d}"
    rows = [
        [
            period, r.employee_number, r.employee_name, r.tax_number,
            r.gross_remuneration, r.taxable_income, r.paye, r.uif_employee, r.uif_employer, r.sdl,
        ]
        for r in declaration.rows
    ]
    filename = f"monthly_declaration_{declaration.year}{declaration.month:02d}.csv"
    return _write_csv(DECLARATION_COLUMNS, rows), filename


def reconciliation_to_csv(reconciliation: AnnualReconciliation) -> Tuple[bytes, str]:
    """One row per tax period, March first."""
    rows = [
        [
            reconciliation.tax_year, p.period_number, f"{p.year}-{p.month:02d}", p.run_status,
            p.employee_count, p.paye, p.uif_employee, p.uif_employer, p.sdl, p.total_liability,
        ]
        for p in reconciliation.periods
    ]
    filename = f"annual_reconciliation_{reconciliation.tax_year.replace('/', '_')}.csv"
    return _write_csv(RECONCILIATION_COLUMNS, rows), filename


def certificate_to_csv(certificates: Sequence[TaxCertificate]) -> Tuple[bytes, str]:
    """One row per certificate."""
    rows = [[getattr(c, column) for column in CERTIFICATE_COLUMNS] for c in certificates]
    tax_year = certificates[0].tax_year.replace('/', '_') if certificates else "empty"
    return _write_csv(CERTIFICATE_COLUMNS, rows), f"tax_certificates_{tax_year}.csv"


def bank_schedule_to_csv(rows: Sequence[BankScheduleRow], period_label: str) -> Tuple[bytes, str]:
    data = [[getattr(r, column) for column in BANK_SCHEDULE_COLUMNS] for r in rows]
    return _write_csv(BANK_SCHEDULE_COLUMNS, data), f"bank_schedule_{period_label}.csv"


def payroll_register_to_csv(rows: Sequence[PayrollRegisterRow], period_label: str) -> Tuple[bytes, str]:
    """Register for the practice's accountant, closed by a totals row."""
    data = [[getattr(r, column) for column in PAYROLL_REGISTER_COLUMNS] for r in rows]
    amounts = PAYROLL_REGISTER_COLUMNS[2:]
    data.append(["", "TOTALS"] + [sum_cents(getattr(r, column) for r in rows) for column in amounts])
    return _write_csv(PAYROLL_REGISTER_COLUMNS, data), f"payroll_register_{period_label}.csv"


def render_certificate_pdf(certificate: TaxCertificate, company_name: Optional[str] = None) -> bytes:
    return PayrollPDFService(company_name).render_certificate(certificate)
