"""
Practice Payroll - Pay Advance Service

Employee salary advances recovered through the next payroll run.

Rules:
- An advance may not exceed pay_advance_max_ratio of monthly salary
- An employee may have only one PENDING or APPROVED advance at a time
- An APPROVED advance is reserved by exactly one payroll run and becomes
  DEDUCTED, linked to that run, when the run is paid
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.config import settings
from practice_payroll.exceptions import (
    ErrorCode,
    NotFoundError,
    PayrollStateError,
    PayrollValidationError,
)
from practice_payroll.models.employee import Employee
from practice_payroll.models.pay_advance import PayAdvance, PayAdvanceStatus
from practice_payroll.models.payroll import PayrollRun, PayrollStatus
from practice_payroll.schemas.payroll import AdvanceInput
from practice_payroll.utils.money import round_cents

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PayAdvanceStatus.PENDING, PayAdvanceStatus.APPROVED)


class PayAdvanceService:
    """Request, decide and recover pay advances."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    # ===========================================
    # LOOKUPS
    # ===========================================
    
    async def get_advance(self, advance_id: uuid.UUID) -> PayAdvance:
        advance = await self.db.get(PayAdvance, advance_id)
        if advance is None:
            raise NotFoundError("Pay advance", advance_id)
        return advance
    
    async def list_advances(
        self,
        practice_id: uuid.UUID,
        status: Optional[PayAdvanceStatus] = None,
        employee_id: Optional[uuid.UUID] = None,
    ) -> List[PayAdvance]:
        query = select(PayAdvance).where(PayAdvance.practice_id == practice_id)
        if status:
            query = query.where(PayAdvance.status == status)
        if employee_id:
            query = query.where(PayAdvance.employee_id == employee_id)
        result = await self.db.execute(query.order_by(PayAdvance.created_at))
        return list(result.scalars().all())
    
    async def list_eligible(self, practice_id: uuid.UUID) -> List[PayAdvance]:
        """Approved advances not yet reserved by any payroll run."""
        result = await self.db.execute(
            select(PayAdvance).where(
                and_(
                    PayAdvance.practice_id == practice_id,
                    PayAdvance.status == PayAdvanceStatus.APPROVED,
                    PayAdvance.payroll_run_id.is_(None),
                )
            ).order_by(PayAdvance.created_at)
        )
        return list(result.scalars().all())
    
    async def advances_for_run(
        self,
        run_id: uuid.UUID,
        employee_id: Optional[uuid.UUID] = None,
    ) -> List[PayAdvance]:
        query = select(PayAdvance).where(PayAdvance.payroll_run_id == run_id)
        if employee_id:
            query = query.where(PayAdvance.employee_id == employee_id)
        result = await self.db.execute(query.order_by(PayAdvance.created_at))
        return list(result.scalars().all())
    
    # ===========================================
    # REQUEST / DECISION
    # ===========================================
    
    async def request_advance(
        self,
        employee_id: uuid.UUID,
        amount: Decimal,
        reason: Optional[str] = None,
    ) -> PayAdvance:
        """Create a PENDING advance for an employee."""
        employee = await self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError("Employee", employee_id)
        if not employee.is_active or employee.gross_salary is None:
            raise PayrollValidationError(
                "Only active employees with a salary may request an advance",
                field="employee_id",
            )
        
        amount = round_cents(amount)
        if amount <= 0:
            raise PayrollValidationError(
                "Advance amount must be positive", field="amount", code=ErrorCode.INVALID_AMOUNT,
            )
        limit = round_cents(employee.monthly_salary * settings.pay_advance_max_ratio)
        if amount > limit:
            raise PayrollValidationError(
                f"Advance of {amount} exceeds the limit of {limit}",
                field="amount",
                code=ErrorCode.INVALID_AMOUNT,
                details={"limit": str(limit)},
            )
        
        existing = await self.db.execute(
            select(PayAdvance).where(
                and_(
                    PayAdvance.employee_id == employee_id,
                    PayAdvance.status.in_(OPEN_STATUSES),
                )
            )
        )
        if existing.scalars().first() is not None:
            raise PayrollStateError(
                "Employee already has an open pay advance", code=ErrorCode.ALREADY_PROCESSED,
            )
        
        advance = PayAdvance(
            practice_id=employee.practice_id,
            employee_id=employee_id,
            requested_amount=amount,
            reason=reason,
            status=PayAdvanceStatus.PENDING,
        )
        self.db.add(advance)
        await self.db.commit()
        
        logger.info(f"Pay advance of {amount} requested for employee {employee.employee_number}")
        return advance
    
    async def approve_advance(
        self,
        advance_id: uuid.UUID,
        approved_by_id: Optional[uuid.UUID] = None,
        approved_amount: Optional[Decimal] = None,
    ) -> PayAdvance:
        """Approve a PENDING advance, optionally for a lower amount."""
        advance = await self.get_advance(advance_id)
        if advance.status != PayAdvanceStatus.PENDING:
            raise PayrollStateError(
                f"Cannot approve a pay advance in {advance.status.value} status",
                current_status=advance.status.value,
            )
        
        if approved_amount is not None:
            approved_amount = round_cents(approved_amount)
            if approved_amount <= 0 or approved_amount > advance.requested_amount:
                raise PayrollValidationError(
                    "Approved amount must be positive and not exceed the requested amount",
                    field="approved_amount",
                    code=ErrorCode.INVALID_AMOUNT,
                )
        
        advance.status = PayAdvanceStatus.APPROVED
        advance.approved_amount = approved_amount if approved_amount is not None else advance.requested_amount
        advance.decided_by_id = approved_by_id
        advance.decided_at = datetime.now(timezone.utc)
        await self.db.commit()
        
        logger.info(f"Pay advance {advance.id} approved for {advance.amount}")
        return advance
    
    async def reject_advance(
        self,
        advance_id: uuid.UUID,
        rejected_by_id: Optional[uuid.UUID] = None,
        reason: str = "",
    ) -> PayAdvance:
        advance = await self.get_advance(advance_id)
        if advance.status != PayAdvanceStatus.PENDING:
            raise PayrollStateError(
                f"Cannot reject a pay advance in {advance.status.value} status",
                current_status=advance.status.value,
            )
        if not reason.strip():
            raise PayrollValidationError("A rejection reason is required", field="reason")
        
        advance.status = PayAdvanceStatus.REJECTED
        advance.rejection_reason = reason.strip()
        advance.decided_by_id = rejected_by_id
        advance.decided_at = datetime.now(timezone.utc)
        await self.db.commit()
        
        logger.info(f"Pay advance {advance.id} rejected")
        return advance
    
    # ===========================================
    # RECOVERY THROUGH PAYROLL
    # ===========================================
    # These methods flush but never commit; the payroll service owns the transaction.
    
    async def attach_to_run(self, advance_id: uuid.UUID, run: PayrollRun) -> PayAdvance:
        """
        Reserve an APPROVED advance for a DRAFT run.
        
        Idempotent for the same run; fails when another run holds it.
        """
        advance = await self.get_advance(advance_id)
        if advance.status == PayAdvanceStatus.DEDUCTED:
            raise PayrollStateError(
                "Pay advance has already been deducted",
                current_status=advance.status.value,
                code=ErrorCode.ALREADY_PROCESSED,
            )
        if advance.status != PayAdvanceStatus.APPROVED:
            raise PayrollStateError(
                f"Only approved pay advances can be deducted, not {advance.status.value}",
                current_status=advance.status.value,
            )
        if advance.payroll_run_id is not None and advance.payroll_run_id != run.id:
            raise PayrollStateError(
                f"Pay advance is already attached to payroll run {advance.payroll_run_id}",
                code=ErrorCode.ALREADY_ATTACHED,
            )
        if advance.practice_id != run.practice_id:
            raise PayrollValidationError("Pay advance belongs to another practice", field="advance_id")
        if run.status != PayrollStatus.DRAFT:
            raise PayrollStateError(
                "Pay advances can only be attached to a DRAFT payroll run",
                current_status=run.status.value,
            )
        
        advance.payroll_run_id = run.id
        await self.db.flush()
        return advance
    
    async def release_from_run(self, run_id: uuid.UUID) -> int:
        """Drop reservations held by a DRAFT run."""
        advances = await self.advances_for_run(run_id)
        released = 0
        for advance in advances:
            if advance.status == PayAdvanceStatus.APPROVED:
                advance.payroll_run_id = None
                released += 1
        await self.db.flush()
        return released
    
    async def reserve_for_run(
        self,
        run: PayrollRun,
        employee_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, List[AdvanceInput]]:
        """
        Reserve every eligible advance for the employees in a run.
        
        Advances already reserved by this run stay reserved; advances held by
        another run are never touched.
        """
        employee_ids = list(employee_ids)
        reserved: Dict[uuid.UUID, List[AdvanceInput]] = defaultdict(list)
        if not employee_ids:
            return reserved
        
        result = await self.db.execute(
            select(PayAdvance).where(
                and_(
                    PayAdvance.practice_id == run.practice_id,
                    PayAdvance.status == PayAdvanceStatus.APPROVED,
                    PayAdvance.employee_id.in_(employee_ids),
                    (PayAdvance.payroll_run_id.is_(None)) | (PayAdvance.payroll_run_id == run.id),
                )
            ).order_by(PayAdvance.created_at)
        )
        for advance in result.scalars().all():
            advance.payroll_run_id = run.id
            reserved[advance.employee_id].append(
                AdvanceInput(advance_id=advance.id, amount=advance.amount)
            )
        await self.db.flush()
        return reserved
    
    async def mark_deducted_for_run(self, run_id: uuid.UUID) -> int:
        """APPROVED -> DEDUCTED for every advance reserved by a paid run."""
        now = datetime.now(timezone.utc)
        deducted = 0
        for advance in await self.advances_for_run(run_id):
            if advance.status == PayAdvanceStatus.APPROVED:
                advance.status = PayAdvanceStatus.DEDUCTED
                advance.deducted_at = now
                deducted += 1
        await self.db.flush()
        if deducted:
            logger.info(f"Marked {deducted} pay advance(s) deducted for payroll run {run_id}")
        return deducted
