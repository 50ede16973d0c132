"""
Practice Payroll - Payslip Service

Builds the payslip data contract for a payroll entry and renders it.
Read-only: building a payslip never modifies payroll data.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.exceptions import NotFoundError
from practice_payroll.models.employee import Practice
from practice_payroll.models.payroll import LineItemKind, PayrollEntry, PayrollRun, PayrollStatus
from practice_payroll.schemas.payslip import PayslipData, PayslipLine
from practice_payroll.schemas.ytd import YTDFigures
from practice_payroll.services.pdf_service import PayrollPDFService
from practice_payroll.services.ytd_service import YTDService, entry_ytd_amounts
from practice_payroll.utils.money import round_cents

logger = logging.getLogger(__name__)


def mask_account_number(account_number: Optional[str]) -> Optional[str]:
    """Show only the last four digits."""
    if not account_number:
        return None
    return "*" * max(len(account_number) - 4, 0) + account_number[-4:]


class PayslipService:
    """Payslip data for processed and draft payroll entries."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ytd = YTDService(db)

    async def _ytd_for_entry(self, entry: PayrollEntry, run: PayrollRun) -> YTDFigures:
        """
        YTD as at the entry's period.

        A DRAFT entry is not yet in the finalized figures, so it is added on
        top to show what the payslip will read once processed.
        """
        figures = await self.ytd.figures_through(entry.employee_id, run.tax_year, run.year, run.month)
        if run.status != PayrollStatus.DRAFT:
            return figures

        amounts = figures.amounts()
        for name, amount in entry_ytd_amounts(entry).items():
            amounts[name] = round_cents(amounts[name] + amount)
        return YTDFigures(
            employee_id=entry.employee_id,
            tax_year=run.tax_year,
            periods_processed=figures.periods_processed + 1,
            **amounts,
        )

    async def build_payslip(self, entry_id: uuid.UUID) -> PayslipData:
        entry = await self.db.get(PayrollEntry, entry_id)
        if entry is None:
            raise NotFoundError("Payroll entry", entry_id)
        run = await self.db.get(PayrollRun, entry.payroll_run_id)
        practice = await self.db.get(Practice, run.practice_id)
        employee = entry.employee

        earnings = [PayslipLine(label="Basic salary", amount=entry.gross_salary)]
        deductions = []
        employer_contributions = []
        for item in entry.line_items:
            line = PayslipLine(kind=item.kind, label=item.label, amount=item.amount)
            if item.is_employer_contribution:
                employer_contributions.append(line)
            elif item.kind == LineItemKind.ADDITION:
                earnings.append(line)
            elif item.amount > 0:
                deductions.append(line)

        return PayslipData(
            entry_id=entry.id,
            payroll_run_id=run.id,
            run_status=run.status,
            practice_name=practice.trading_name or practice.name,
            paye_reference=practice.paye_reference_number,
            employee_id=employee.id,
            employee_number=employee.employee_number,
            employee_name=employee.full_name,
            tax_number=employee.tax_number,
            id_number=employee.id_number,
            bank_name=employee.bank_name,
            bank_account_masked=mask_account_number(employee.bank_account_number),
            month=run.month,
            year=run.year,
            period_label=run.period_label,
            tax_year=run.tax_year,
            payment_date=run.payment_date,
            earnings=earnings,
            deductions=deductions,
            employer_contributions=employer_contributions,
            total_earnings=round_cents(entry.gross_salary + entry.total_additions),
            total_deductions=round_cents(entry.total_deductions),
            net_pay=round_cents(entry.net_salary),
            taxable_income=round_cents(entry.taxable_income),
            fringe_benefits=round_cents(entry.fringe_benefits),
            medical_tax_credit=round_cents(entry.medical_tax_credit),
            ytd=await self._ytd_for_entry(entry, run),
            delivery_blocked=entry.payslip_blocked,
            warnings=[w["message"] for w in entry.validation_warnings],
        )

    async def render_payslip(self, entry_id: uuid.UUID) -> bytes:
        payslip = await self.build_payslip(entry_id)
        logger.info(f"Rendering payslip for {payslip.employee_number} ({payslip.period_label})")
        return render_payslip_pdf(payslip)


def render_payslip_pdf(payslip: PayslipData, company_name: Optional[str] = None) -> bytes:
    return PayrollPDFService(company_name).render_payslip(payslip)
