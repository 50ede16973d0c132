"""
Practice Payroll - Payroll Audit Service

Writes the append-only calculation trail for payroll entries.

Each row carries the compensation snapshot, the tax table version and
every intermediate value of the calculation. Rows are chained per
employee and tax year: content_hash covers the row content plus the
previous row's hash, so any later edit or deletion breaks the chain.

record() adds rows to the caller's transaction and lets failures
propagate; a failed audit write aborts the PROCESS transition.
There is deliberately no update or delete API.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.exceptions import ConsistencyError, ErrorCode
from practice_payroll.models.audit import AuditEvent, PayrollAuditLog
from practice_payroll.models.payroll import PayrollEntry, PayrollRun
from practice_payroll.utils.money import content_hash, json_safe

logger = logging.getLogger(__name__)


# Figures copied from the entry; negated for reversals
AUDIT_FIGURES = {
    "gross_remuneration": lambda e: e.gross_salary + e.total_additions,
    "taxable_income": lambda e: e.taxable_income,
    "paye": lambda e: e.paye_amount,
    "uif_employee": lambda e: e.uif_amount,
    "uif_employer": lambda e: e.employer_uif,
    "sdl": lambda e: e.employer_sdl,
    "net_salary": lambda e: e.net_salary,
}


def _row_content(log: PayrollAuditLog) -> Dict[str, Any]:
    """Canonical content covered by content_hash."""
    content = {
        "practice_id": log.practice_id,
        "payroll_run_id": log.payroll_run_id,
        "payroll_entry_id": log.payroll_entry_id,
        "employee_id": log.employee_id,
        "event": log.event,
        "tax_year": log.tax_year,
        "tax_table_version": log.tax_table_version,
        "period_month": log.period_month,
        "period_year": log.period_year,
        "sequence": log.sequence,
        "input_snapshot": log.input_snapshot,
        "calculation": log.calculation,
        "reason": log.reason,
        "recorded_by_id": log.recorded_by_id,
        "previous_hash": log.previous_hash,
    }
    for name in AUDIT_FIGURES:
        content[name] = getattr(log, name)
    return content


class PayrollAuditService:
    """Append-only writer and verifier for PayrollAuditLog."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def _chain_head(self, employee_id: uuid.UUID, tax_year: str) -> Optional[PayrollAuditLog]:
        result = await self.db.execute(
            select(PayrollAuditLog)
            .where(
                and_(
                    PayrollAuditLog.employee_id == employee_id,
                    PayrollAuditLog.tax_year == tax_year,
                )
            )
            .order_by(PayrollAuditLog.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
    
    async def record(
        self,
        entry: PayrollEntry,
        run: PayrollRun,
        tax_table_version: str,
        event: AuditEvent = AuditEvent.CALCULATION,
        recorded_by_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> PayrollAuditLog:
        """
        Append the audit row for one entry calculation (or its reversal).
        
        Args:
            entry: The payroll entry, carrying its snapshot and calculation
            run: The entry's payroll run
            tax_table_version: Version hash of the tax table used
            event: CALCULATION, or REVERSAL to record negated figures
            recorded_by_id: Acting user, if known
            reason: Free-text justification, required for reversals
        
        Returns:
            The new, flushed PayrollAuditLog row
        """
        head = await self._chain_head(entry.employee_id, run.tax_year)
        sign = Decimal("-1") if event == AuditEvent.REVERSAL else Decimal("1")
        
        log = PayrollAuditLog(
            practice_id=run.practice_id,
            payroll_run_id=run.id,
            payroll_entry_id=entry.id,
            employee_id=entry.employee_id,
            event=event,
            tax_year=run.tax_year,
            tax_table_version=tax_table_version,
            period_month=run.month,
            period_year=run.year,
            sequence=(head.sequence + 1) if head else 1,
            input_snapshot=json_safe(entry.compensation_snapshot),
            calculation=json_safe(entry.calculation),
            reason=reason,
            recorded_by_id=recorded_by_id,
            previous_hash=head.content_hash if head else None,
            **{name: figure(entry) * sign for name, figure in AUDIT_FIGURES.items()},
        )
        log.content_hash = content_hash(_row_content(log))
        
        self.db.add(log)
        await self.db.flush()
        return log
    
    async def list_for_run(self, run_id: uuid.UUID) -> List[PayrollAuditLog]:
        result = await self.db.execute(
            select(PayrollAuditLog)
            .where(PayrollAuditLog.payroll_run_id == run_id)
            .order_by(PayrollAuditLog.employee_id, PayrollAuditLog.sequence)
        )
        return list(result.scalars().all())
    
    async def list_for_entry(self, entry_id: uuid.UUID) -> List[PayrollAuditLog]:
        result = await self.db.execute(
            select(PayrollAuditLog)
            .where(PayrollAuditLog.payroll_entry_id == entry_id)
            .order_by(PayrollAuditLog.sequence)
        )
        return list(result.scalars().all())
    
    async def list_for_employee(self, employee_id: uuid.UUID, tax_year: str) -> List[PayrollAuditLog]:
        result = await self.db.execute(
            select(PayrollAuditLog)
            .where(
                and_(
                    PayrollAuditLog.employee_id == employee_id,
                    PayrollAuditLog.tax_year == tax_year,
                )
            )
            .order_by(PayrollAuditLog.sequence)
        )
        return list(result.scalars().all())
    
    async def verify_chain(self, employee_id: uuid.UUID, tax_year: str) -> int:
        """
        Recompute every hash in an employee's chain for a tax year.
        
        Returns the number of verified rows.
        
        Raises:
            ConsistencyError: a row was altered, removed or reordered
        """
        logs = await self.list_for_employee(employee_id, tax_year)
        problems = []
        previous_hash = None
        
        for expected_sequence, log in enumerate(logs, start=1):
            if log.sequence != expected_sequence:
                problems.append({"sequence": log.sequence, "problem": f"expected sequence {expected_sequence}"})
            if log.previous_hash != previous_hash:
                problems.append({"sequence": log.sequence, "problem": "previous hash does not match"})
            if content_hash(_row_content(log)) != log.content_hash:
                problems.append({"sequence": log.sequence, "problem": "content hash does not match"})
            previous_hash = log.content_hash
        
        if problems:
            raise ConsistencyError(
                f"Audit chain for employee {employee_id} in {tax_year} is broken",
                discrepancies=problems,
                code=ErrorCode.CHAIN_INTEGRITY_VIOLATED,
            )
        return len(logs)
