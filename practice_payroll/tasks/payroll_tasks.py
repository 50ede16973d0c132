"""
Practice Payroll - Celery Tasks

Scheduled payroll checks:
- YTD drift: reconstructs every ledger from processed entries and reports mismatches
- Declaration reminder: monthly liability and whether its declaration was submitted
"""

import asyncio
import logging
from datetime import date
from typing import Any, Dict, Optional

from celery import shared_task
from sqlalchemy import select

from practice_payroll.database import async_session_factory
from practice_payroll.models.employee import Practice
from practice_payroll.services.compliance_report_service import ComplianceReportService
from practice_payroll.services.tax_calculators.paye_service import tax_year_label_for
from practice_payroll.services.ytd_service import YTDService
from practice_payroll.utils.money import format_amount

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def previous_month(today: date):
    if today.month == 1:
        return today.year - 1, 12
    return today.year, today.month - 1


# ===========================================
# YTD TASKS
# ===========================================

@shared_task(name='practice_payroll.tasks.payroll_tasks.check_ytd_drift')
def check_ytd_drift(tax_year: Optional[str] = None) -> Dict[str, Any]:
    """Compare cached YTD ledgers with processed entries for every practice."""
    return run_async(_check_ytd_drift(tax_year=tax_year))


async def _check_ytd_drift(
    session_factory=async_session_factory,
    tax_year: Optional[str] = None,
) -> Dict[str, Any]:
    """Async implementation of the YTD drift check. Never corrects a ledger."""
    today = date.today()
    tax_year = tax_year or tax_year_label_for(today.year, today.month)

    async with session_factory() as db:
        practices = (await db.execute(select(Practice).order_by(Practice.name))).scalars().all()
        ytd_service = YTDService(db)

        drifted = {}
        for practice in practices:
            discrepancies = await ytd_service.check_practice_drift(practice.id, tax_year)
            if discrepancies:
                drifted[str(practice.id)] = [d.model_dump(mode="json") for d in discrepancies]

    if drifted:
        logger.error(f"YTD drift found for {len(drifted)} practice(s) in {tax_year}")
    else:
        logger.info(f"YTD drift check complete: {len(practices)} practice(s) consistent for {tax_year}")

    return {
        "tax_year": tax_year,
        "practices_checked": len(practices),
        "practices_with_drift": len(drifted),
        "discrepancies": drifted,
    }


# ===========================================
# DECLARATION TASKS
# ===========================================

@shared_task(name='practice_payroll.tasks.payroll_tasks.declaration_reminder')
def declaration_reminder() -> Dict[str, Any]:
    """Report last month's declaration liability per practice."""
    return run_async(_declaration_reminder())


async def _declaration_reminder(
    session_factory=async_session_factory,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    year, month = previous_month(today or date.today())
    reminders = []

    async with session_factory() as db:
        practices = (await db.execute(select(Practice).order_by(Practice.name))).scalars().all()
        reports = ComplianceReportService(db)

        for practice in practices:
            declaration = await reports.monthly_declaration(practice.id, month, year)
            if declaration.run_status is None:
                logger.warning(
                    f"{practice.name}: no processed payroll for {year}-{month:02d}, "
                    f"declaration due {declaration.due_date.isoformat()}"
                )
            elif declaration.submitted_at is None:
                logger.info(
                    f"{practice.name}: declaration for {year}-{month:02d} not yet submitted, "
                    f"due {declaration.due_date.isoformat()}"
                )
            reminders.append({
                "practice_id": str(practice.id),
                "period": f"{year}-{month:02d}",
                "due_date": declaration.due_date.isoformat(),
                "processed": declaration.run_status is not None,
                "submitted": declaration.submitted_at is not None,
                "total_liability": format_amount(declaration.total_liability),
            })

    logger.info(f"Declaration reminders prepared for {len(reminders)} practice(s)")
    return {"period": f"{year}-{month:02d}", "reminders": reminders}
