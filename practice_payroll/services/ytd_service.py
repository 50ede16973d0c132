"""
Practice Payroll - YTD Aggregator

Maintains EmployeeYTD running totals as payroll runs are processed.

apply_run() is called exactly once per run, inside the DRAFT -> PROCESSED
transaction; the guarded status update makes it non-reentrant.
reconstruct() recomputes the figures from PROCESSED and PAID entries and
is the ground truth the cached ledger is checked against.
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.exceptions import ConsistencyError, ErrorCode, PayrollStateError
from practice_payroll.models.payroll import PayrollEntry, PayrollRun, PayrollStatus
from practice_payroll.models.ytd import YTD_FIELDS, EmployeeYTD
from practice_payroll.schemas.ytd import YTDDiscrepancy, YTDFigures
from practice_payroll.utils.money import ZERO, round_cents

logger = logging.getLogger(__name__)

FINALIZED_STATUSES = (PayrollStatus.PROCESSED, PayrollStatus.PAID)


def entry_ytd_amounts(entry: PayrollEntry) -> Dict[str, Decimal]:
    """Contribution of one payroll entry to each YTD column."""
    return {
        "ytd_gross": entry.gross_salary + entry.total_additions,
        "ytd_taxable_income": entry.taxable_income,
        "ytd_paye": entry.paye_amount,
        "ytd_uif_employee": entry.uif_amount,
        "ytd_uif_employer": entry.employer_uif,
        "ytd_sdl": entry.employer_sdl,
        "ytd_pension": entry.pension_amount,
        "ytd_medical_aid": entry.medical_aid_amount,
        "ytd_other_deductions": entry.other_deductions,
        "ytd_total_deductions": entry.total_deductions,
        "ytd_net": entry.net_salary,
        "ytd_fringe_benefits": entry.fringe_benefits,
        "ytd_medical_credits": entry.medical_tax_credit,
    }


class YTDService:
    """Year-to-date ledger maintenance and drift detection."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def get_ledger(self, employee_id: uuid.UUID, tax_year: str) -> Optional[EmployeeYTD]:
        result = await self.db.execute(
            select(EmployeeYTD).where(
                and_(
                    EmployeeYTD.employee_id == employee_id,
                    EmployeeYTD.tax_year == tax_year,
                )
            )
        )
        return result.scalar_one_or_none()
    
    async def get_ytd(self, employee_id: uuid.UUID, tax_year: str) -> YTDFigures:
        """Cached figures; zeros when nothing has been processed yet."""
        ledger = await self.get_ledger(employee_id, tax_year)
        if ledger is None:
            return YTDFigures(employee_id=employee_id, tax_year=tax_year)
        return YTDFigures.from_model(ledger)
    
    async def list_practice_ledgers(self, practice_id: uuid.UUID, tax_year: str) -> List[EmployeeYTD]:
        result = await self.db.execute(
            select(EmployeeYTD).where(
                and_(
                    EmployeeYTD.practice_id == practice_id,
                    EmployeeYTD.tax_year == tax_year,
                )
            )
        )
        return list(result.scalars().all())
    
    # ===========================================
    # UPDATES (caller owns the transaction)
    # ===========================================
    
    async def apply_run(self, run: PayrollRun) -> int:
        """
        Add a newly PROCESSED run's entries to the YTD ledgers.
        
        Returns count of updated ledgers.
        """
        if run.status != PayrollStatus.PROCESSED:
            raise PayrollStateError(
                "YTD can only be applied for a run that is being processed",
                current_status=run.status.value,
            )
        
        now = datetime.now(timezone.utc)
        updated_count = 0
        for entry in run.entries:
            amounts = entry_ytd_amounts(entry)
            ledger = await self.get_ledger(entry.employee_id, run.tax_year)
            
            if ledger:
                for name, amount in amounts.items():
                    setattr(ledger, name, round_cents(getattr(ledger, name) + amount))
                ledger.periods_processed += 1
            else:
                ledger = EmployeeYTD(
                    practice_id=run.practice_id,
                    employee_id=entry.employee_id,
                    tax_year=run.tax_year,
                    periods_processed=1,
                    **{name: round_cents(amount) for name, amount in amounts.items()},
                )
                self.db.add(ledger)
            
            ledger.last_payroll_run_id = run.id
            ledger.last_updated_at = now
            updated_count += 1
        
        await self.db.flush()
        logger.info(f"Applied payroll run {run.id} to {updated_count} YTD ledger(s) for {run.tax_year}")
        return updated_count
    
    async def reverse_run(self, run: PayrollRun) -> int:
        """Subtract a PROCESSED run from the ledgers as part of an audited reversal."""
        if run.status != PayrollStatus.PROCESSED:
            raise PayrollStateError(
                "Only a PROCESSED run can be reversed",
                current_status=run.status.value,
            )
        
        now = datetime.now(timezone.utc)
        reversed_count = 0
        for entry in run.entries:
            ledger = await self.get_ledger(entry.employee_id, run.tax_year)
            if ledger is None:
                raise ConsistencyError(
                    f"No YTD ledger to reverse for employee {entry.employee_id} in {run.tax_year}",
                    code=ErrorCode.YTD_DRIFT,
                )
            for name, amount in entry_ytd_amounts(entry).items():
                setattr(ledger, name, round_cents(getattr(ledger, name) - amount))
            ledger.periods_processed -= 1
            ledger.last_updated_at = now
            reversed_count += 1
        
        await self.db.flush()
        logger.warning(f"Reversed payroll run {run.id} from {reversed_count} YTD ledger(s)")
        return reversed_count
    
    # ===========================================
    # RECONSTRUCTION AND DRIFT
    # ===========================================
    
    async def _finalized_entries(
        self,
        tax_year: str,
        employee_id: Optional[uuid.UUID] = None,
        practice_id: Optional[uuid.UUID] = None,
        through: Optional[Tuple[int, int]] = None,
    ) -> List[PayrollEntry]:
        query = (
            select(PayrollEntry)
            .join(PayrollRun, PayrollEntry.payroll_run_id == PayrollRun.id)
            .where(
                and_(
                    PayrollRun.tax_year == tax_year,
                    PayrollRun.status.in_(FINALIZED_STATUSES),
                )
            )
        )
        if employee_id:
            query = query.where(PayrollEntry.employee_id == employee_id)
        if practice_id:
            query = query.where(PayrollRun.practice_id == practice_id)
        if through:
            year, month = through
            query = query.where(PayrollRun.year * 100 + PayrollRun.month <= year * 100 + month)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    @staticmethod
    def _sum_entries(employee_id: uuid.UUID, tax_year: str, entries: List[PayrollEntry]) -> YTDFigures:
        totals = {name: ZERO for name in YTD_FIELDS}
        for entry in entries:
            for name, amount in entry_ytd_amounts(entry).items():
                totals[name] += amount
        return YTDFigures(
            employee_id=employee_id,
            tax_year=tax_year,
            periods_processed=len(entries),
            **{name: round_cents(value) for name, value in totals.items()},
        )
    
    async def reconstruct(self, employee_id: uuid.UUID, tax_year: str) -> YTDFigures:
        """YTD recomputed purely from PROCESSED and PAID entries."""
        entries = await self._finalized_entries(tax_year, employee_id=employee_id)
        return self._sum_entries(employee_id, tax_year, entries)
    
    async def figures_through(
        self,
        employee_id: uuid.UUID,
        tax_year: str,
        year: int,
        month: int,
    ) -> YTDFigures:
        """YTD as at the end of a calendar month, from finalized entries up to and including it."""
        entries = await self._finalized_entries(tax_year, employee_id=employee_id, through=(year, month))
        return self._sum_entries(employee_id, tax_year, entries)
    
    @staticmethod
    def compare(cached: Optional[YTDFigures], reconstructed: YTDFigures) -> List[YTDDiscrepancy]:
        discrepancies = []
        for name, expected in reconstructed.amounts().items():
            actual = getattr(cached, name) if cached else None
            if actual is None and expected == 0:
                continue
            if actual is None or round_cents(actual) != expected:
                discrepancies.append(YTDDiscrepancy(
                    employee_id=reconstructed.employee_id,
                    tax_year=reconstructed.tax_year,
                    field=name,
                    cached=actual,
                    reconstructed=expected,
                ))
        return discrepancies
    
    async def check_drift(self, employee_id: uuid.UUID, tax_year: str) -> List[YTDDiscrepancy]:
        """Differences between the cached ledger and ground truth; empty when consistent."""
        ledger = await self.get_ledger(employee_id, tax_year)
        cached = YTDFigures.from_model(ledger) if ledger else None
        reconstructed = await self.reconstruct(employee_id, tax_year)
        return self.compare(cached, reconstructed)
    
    async def check_practice_drift(self, practice_id: uuid.UUID, tax_year: str) -> List[YTDDiscrepancy]:
        """Drift check for every employee with a ledger or a finalized entry."""
        entries = await self._finalized_entries(tax_year, practice_id=practice_id)
        by_employee: Dict[uuid.UUID, List[PayrollEntry]] = defaultdict(list)
        for entry in entries:
            by_employee[entry.employee_id].append(entry)
        
        ledgers = {l.employee_id: l for l in await self.list_practice_ledgers(practice_id, tax_year)}
        
        discrepancies = []
        for employee_id in sorted(set(by_employee) | set(ledgers), key=str):
            reconstructed = self._sum_entries(employee_id, tax_year, by_employee.get(employee_id, []))
            ledger = ledgers.get(employee_id)
            cached = YTDFigures.from_model(ledger) if ledger else None
            discrepancies.extend(self.compare(cached, reconstructed))
        
        if discrepancies:
            logger.error(
                f"YTD drift for practice {practice_id} in {tax_year}: "
                f"{len(discrepancies)} discrepancy(ies)"
            )
        return discrepancies
    
    async def assert_consistent(self, employee_id: uuid.UUID, tax_year: str) -> None:
        """Raise ConsistencyError on drift; never corrects the ledger."""
        discrepancies = await self.check_drift(employee_id, tax_year)
        if discrepancies:
            raise ConsistencyError(
                f"YTD ledger for employee {employee_id} in {tax_year} disagrees with payroll entries",
                discrepancies=[d.model_dump(mode="json") for d in discrepancies],
                code=ErrorCode.YTD_DRIFT,
            )
