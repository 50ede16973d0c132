"""
Practice Payroll - Payroll Service

Payroll run engine for South African monthly payroll.

Statutory items per employee:
1. PAYE - from the published tax table of the run's tax year
   - Regular income annualised and apportioned per tax period
   - Irregular payments taxed on the annual difference they cause
   - Medical scheme fees tax credits for medical aid members
2. UIF - employee contribution, capped, matched by the employer
3. SDL - employer only, no cap

Run lifecycle: absent -> DRAFT -> PROCESSED -> PAID
- generate: (re)computes every entry of a DRAFT run; idempotent
- add/remove irregular payment: DRAFT only
- process: locks entries, applies YTD and writes audit rows atomically
- mark paid: terminal; reserved pay advances become DEDUCTED
"""

import logging
import uuid
from calendar import monthrange
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from practice_payroll.config import settings
from practice_payroll.exceptions import (
    ConcurrentModificationError,
    ConsistencyError,
    ErrorCode,
    NotFoundError,
    PayrollError,
    PayrollStateError,
    PayrollValidationError,
    wrap_database_error,
)
from practice_payroll.models.audit import AuditEvent
from practice_payroll.models.employee import (
    DeductionType,
    Employee,
    EmploymentStatus,
    Practice,
)
from practice_payroll.models.payroll import (
    LineItemKind,
    PaymentType,
    PayrollAddition,
    PayrollEntry,
    PayrollLineItem,
    PayrollRun,
    PayrollStatus,
)
from practice_payroll.schemas.payroll import (
    AdditionInput,
    AdvanceInput,
    BankScheduleRow,
    CompensationSnapshot,
    DeductionSnapshot,
    EntryCalculation,
    FringeBenefitSnapshot,
    GenerationResult,
    LineItem,
    PayrollRegisterRow,
    RunTotals,
    ValidationSeverity,
    ValidationWarning,
    WarningCode,
)
from practice_payroll.services.audit_service import PayrollAuditService
from practice_payroll.services.pay_advance_service import PayAdvanceService
from practice_payroll.services.tax_calculators.paye_service import (
    PAYECalculator,
    TaxTable,
    TaxTableService,
    monthly_paye,
    period_number,
    tax_year_label_for,
)
from practice_payroll.services.tax_calculators.statutory_service import (
    StatutoryRates,
    StatutoryRateService,
    compute_retirement_deduction,
    compute_sdl,
    compute_uif,
)
from practice_payroll.services.ytd_service import YTDService
from practice_payroll.utils.money import ZERO, json_safe, round_cents, sum_cents, to_decimal

logger = logging.getLogger(__name__)


# ===========================================
# CONSTANTS
# ===========================================

MONTHS_PER_YEAR = 12

PAYABLE_STATUSES = (EmploymentStatus.ACTIVE, EmploymentStatus.ON_LEAVE)

TOTAL_FIELDS = (
    ("total_gross", "gross_salary"),
    ("total_additions", "total_additions"),
    ("total_paye", "paye_amount"),
    ("total_uif_employee", "uif_amount"),
    ("total_deductions", "total_deductions"),
    ("total_net", "net_salary"),
    ("total_employer_uif", "employer_uif"),
    ("total_employer_sdl", "employer_sdl"),
)


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


# ===========================================
# PURE CALCULATION
# ===========================================

def build_compensation_snapshot(employee: Employee, on_date: date) -> CompensationSnapshot:
    """Freeze an employee's compensation configuration as at on_date."""
    contractual = to_decimal(employee.gross_salary)
    gross_monthly = employee.monthly_salary

    deductions = [
        DeductionSnapshot(
            deduction_type=d.deduction_type,
            description=d.description,
            amount=to_decimal(d.amount) if d.amount is not None else None,
            percentage=to_decimal(d.percentage) if d.percentage is not None else None,
            reference_id=d.id,
        )
        for d in sorted(employee.deductions, key=lambda d: (d.deduction_type.value, d.description, str(d.id)))
        if d.applies_on(on_date)
    ]
    fringe_benefits = [
        FringeBenefitSnapshot(
            benefit_type=f.benefit_type,
            description=f.description,
            monthly_value=to_decimal(f.monthly_value),
        )
        for f in sorted(employee.fringe_benefits, key=lambda f: (f.benefit_type, f.description, str(f.id)))
        if f.applies_on(on_date)
    ]

    return CompensationSnapshot(
        employee_id=employee.id,
        employee_number=employee.employee_number,
        full_name=employee.full_name,
        tax_number=employee.tax_number,
        id_number=employee.id_number,
        date_of_birth=employee.date_of_birth,
        pay_frequency=employee.pay_frequency,
        contractual_salary=contractual,
        gross_monthly=gross_monthly,
        uif_exempt=employee.uif_exempt,
        uif_exemption_reason=employee.uif_exemption_reason,
        paye_override=to_decimal(employee.paye_override) if employee.paye_override is not None else None,
        medical_aid_dependants=employee.medical_aid_dependants or 0,
        deductions=deductions,
        fringe_benefits=fringe_benefits,
        has_banking_details=employee.has_banking_details,
    )


def _deduction_amount(deduction: DeductionSnapshot, gross: Decimal) -> Decimal:
    return compute_retirement_deduction(gross, deduction.percentage, deduction.amount)


def calculate_entry(
    snapshot: CompensationSnapshot,
    table: TaxTable,
    rates: StatutoryRates,
    period: int,
    additions: Sequence[AdditionInput] = (),
    advances: Sequence[AdvanceInput] = (),
    sdl_exempt: bool = False,
    retirement_limit: Decimal = settings.retirement_contribution_limit,
) -> EntryCalculation:
    """
    Calculate one employee's payroll entry.

    Pure: identical inputs always give identical output, so entries can be
    computed independently and in any order.

    Args:
        snapshot: Compensation frozen for the run
        table: Tax table of the run's tax year
        rates: UIF/SDL rates in force for the period
        period: Tax period number (March = 1)
        additions: Irregular payments on this entry
        advances: Approved pay advances recovered in this run
        sdl_exempt: Employer is exempt from SDL
        retirement_limit: Share of remuneration above which retirement
            contributions are flagged
    """
    calculator = PAYECalculator(table)
    warnings: List[ValidationWarning] = []

    def warn(code: WarningCode, message: str, severity=ValidationSeverity.WARNING):
        warnings.append(ValidationWarning(
            employee_id=snapshot.employee_id,
            employee_number=snapshot.employee_number,
            code=code,
            message=message,
            severity=severity,
        ))

    # Earnings
    gross = round_cents(snapshot.gross_monthly)
    total_additions = sum_cents(a.amount for a in additions)
    fringe = sum_cents(f.monthly_value for f in snapshot.fringe_benefits)
    remuneration = gross + total_additions
    regular_taxable = gross + fringe
    annual_regular = regular_taxable * MONTHS_PER_YEAR

    # PAYE
    age = calculator.age_at_year_end(snapshot.date_of_birth)
    annual = calculator.calculate_annual_paye(annual_regular, age)
    if snapshot.paye_override is not None:
        paye_before_credits = round_cents(snapshot.paye_override)
        medical_credit = ZERO
    else:
        paye_before_credits = monthly_paye(annual["annual_paye"], period)
        available_credit = calculator.monthly_medical_credit(
            snapshot.is_medical_aid_member, snapshot.medical_aid_dependants,
        )
        medical_credit = min(available_credit, paye_before_credits)
    regular_paye = paye_before_credits - medical_credit
    irregular_paye = calculator.irregular_payment_paye(annual_regular, total_additions, age)
    paye = regular_paye + irregular_paye

    # UIF / SDL on cash remuneration
    uif = compute_uif(remuneration, snapshot.uif_exempt, rates)
    sdl = compute_sdl(remuneration, rates, sdl_exempt)

    # Recurring deductions
    line_items: List[LineItem] = [
        LineItem(kind=LineItemKind.PAYE, label="PAYE", amount=paye),
        LineItem(kind=LineItemKind.UIF, label="UIF", amount=uif.employee),
    ]
    totals = {DeductionType.PENSION: ZERO, DeductionType.MEDICAL_AID: ZERO, DeductionType.OTHER: ZERO}
    kinds = {
        DeductionType.PENSION: LineItemKind.PENSION,
        DeductionType.MEDICAL_AID: LineItemKind.MEDICAL_AID,
        DeductionType.OTHER: LineItemKind.OTHER,
    }
    for deduction in snapshot.deductions:
        amount = _deduction_amount(deduction, gross)
        if amount <= 0:
            continue
        totals[deduction.deduction_type] += amount
        line_items.append(LineItem(
            kind=kinds[deduction.deduction_type],
            label=deduction.description,
            amount=amount,
            reference_id=deduction.reference_id,
        ))

    advance_total = sum_cents(a.amount for a in advances)
    for advance in advances:
        line_items.append(LineItem(
            kind=LineItemKind.OTHER,
            label="Pay advance recovery",
            amount=round_cents(advance.amount),
            reference_id=advance.advance_id,
        ))
    for addition in additions:
        line_items.append(LineItem(
            kind=LineItemKind.ADDITION,
            label=addition.description,
            amount=round_cents(addition.amount),
            reference_id=addition.reference_id,
        ))
    line_items.append(LineItem(
        kind=LineItemKind.UIF, label="UIF (employer)", amount=uif.employer, is_employer_contribution=True,
    ))
    line_items.append(LineItem(
        kind=LineItemKind.SDL, label="SDL", amount=sdl, is_employer_contribution=True,
    ))

    pension = round_cents(totals[DeductionType.PENSION])
    medical_aid = round_cents(totals[DeductionType.MEDICAL_AID])
    other = round_cents(totals[DeductionType.OTHER]) + advance_total
    total_deductions = paye + uif.employee + pension + medical_aid + other
    net = remuneration - total_deductions

    # Validation
    if not snapshot.has_banking_details:
        warn(WarningCode.MISSING_BANKING_DETAILS, "No banking details; payslip delivery is withheld")
    if net <= 0:
        warn(WarningCode.NON_POSITIVE_NET, f"Net salary is {net}")
    if snapshot.date_of_birth is None:
        warn(WarningCode.MISSING_DATE_OF_BIRTH, "No date of birth; only the primary rebate applies")
    if not snapshot.tax_number:
        warn(
            WarningCode.MISSING_TAX_NUMBER,
            "No income tax reference number",
            severity=ValidationSeverity.ERROR,
        )
    if remuneration > 0 and pension > round_cents(remuneration * retirement_limit):
        warn(
            WarningCode.RETIREMENT_ABOVE_LIMIT,
            f"Retirement contribution {pension} exceeds {retirement_limit:.1%} of remuneration",
        )

    calculation = {
        "tax_year": table.tax_year,
        "tax_table_version": table.version,
        "period_number": period,
        "age_at_tax_year_end": age,
        "gross_monthly": gross,
        "irregular_payments": total_additions,
        "fringe_benefits": fringe,
        "regular_taxable_monthly": regular_taxable,
        "annual_regular_taxable": annual_regular,
        "annual_paye": annual,
        "paye_override": snapshot.paye_override,
        "monthly_paye_before_credits": paye_before_credits,
        "medical_tax_credit": medical_credit,
        "regular_paye": regular_paye,
        "irregular_payment_paye": irregular_paye,
        "paye": paye,
        "statutory_rates": rates.to_dict(),
        "uif_base": remuneration,
        "uif_exempt": snapshot.uif_exempt,
        "uif_employee": uif.employee,
        "uif_employer": uif.employer,
        "sdl_exempt": sdl_exempt,
        "sdl": sdl,
        "pension": pension,
        "medical_aid": medical_aid,
        "other_recurring_deductions": round_cents(totals[DeductionType.OTHER]),
        "pay_advances": advance_total,
        "total_deductions": total_deductions,
        "net_salary": net,
    }

    return EntryCalculation(
        employee_id=snapshot.employee_id,
        gross_salary=gross,
        total_additions=total_additions,
        fringe_benefits=fringe,
        taxable_income=remuneration + fringe,
        paye_amount=paye,
        uif_amount=uif.employee,
        pension_amount=pension,
        medical_aid_amount=medical_aid,
        other_deductions=other,
        pay_advance_amount=advance_total,
        total_deductions=total_deductions,
        net_salary=net,
        medical_tax_credit=medical_credit,
        employer_uif=uif.employer,
        employer_sdl=sdl,
        line_items=line_items,
        warnings=warnings,
        calculation=calculation,
    )


def compute_run_totals(entries: Iterable) -> RunTotals:
    """Sum entry figures; accepts PayrollEntry rows or EntryCalculation results."""
    entries = list(entries)
    values = {
        total_name: sum_cents(getattr(e, entry_name) for e in entries)
        for total_name, entry_name in TOTAL_FIELDS
    }
    return RunTotals(employee_count=len(entries), **values)


# ===========================================
# PAYROLL SERVICE
# ===========================================

class PayrollService:
    """
    Payroll run engine: generation, irregular payments and the
    DRAFT -> PROCESSED -> PAID transitions.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.tax_tables = TaxTableService(db)
        self.rates = StatutoryRateService(db)
        self.advances = PayAdvanceService(db)
        self.ytd = YTDService(db)
        self.audit = PayrollAuditService(db)

    # ===========================================
    # LOOKUPS
    # ===========================================

    def _run_query(self):
        return (
            select(PayrollRun)
            .options(
                selectinload(PayrollRun.entries).selectinload(PayrollEntry.additions),
                selectinload(PayrollRun.entries).selectinload(PayrollEntry.line_items),
            )
            .execution_options(populate_existing=True)
        )

    async def get_payroll_run(self, run_id: uuid.UUID, for_update: bool = False) -> PayrollRun:
        """Payroll run with entries, additions and line items freshly loaded."""
        query = self._run_query().where(PayrollRun.id == run_id)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError("Payroll run", run_id)
        return run

    async def get_payroll_run_for_period(
        self,
        practice_id: uuid.UUID,
        month: int,
        year: int,
        for_update: bool = False,
    ) -> Optional[PayrollRun]:
        query = self._run_query().where(
            and_(
                PayrollRun.practice_id == practice_id,
                PayrollRun.month == month,
                PayrollRun.year == year,
            )
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list_payroll_runs(
        self,
        practice_id: uuid.UUID,
        year: Optional[int] = None,
        status: Optional[PayrollStatus] = None,
    ) -> List[PayrollRun]:
        query = select(PayrollRun).where(PayrollRun.practice_id == practice_id)
        if year:
            query = query.where(PayrollRun.year == year)
        if status:
            query = query.where(PayrollRun.status == status)
        result = await self.db.execute(query.order_by(PayrollRun.year.desc(), PayrollRun.month.desc()))
        return list(result.scalars().all())

    async def _get_practice(self, practice_id: uuid.UUID) -> Practice:
        practice = await self.db.get(Practice, practice_id)
        if practice is None:
            raise NotFoundError("Practice", practice_id)
        return practice

    async def _eligible_employees(
        self,
        practice_id: uuid.UUID,
        period_start: date,
        period_end: date,
    ) -> List[Employee]:
        """Active employees with a salary, employed during the period."""
        result = await self.db.execute(
            select(Employee)
            .where(
                and_(
                    Employee.practice_id == practice_id,
                    Employee.is_active == True,
                    Employee.employment_status.in_(PAYABLE_STATUSES),
                    Employee.gross_salary.is_not(None),
                    or_(Employee.start_date.is_(None), Employee.start_date <= period_end),
                    or_(Employee.end_date.is_(None), Employee.end_date >= period_start),
                )
            )
            .order_by(Employee.employee_number)
        )
        return list(result.scalars().all())

    # ===========================================
    # GENERATION
    # ===========================================

    async def generate_payroll_run(
        self,
        practice_id: uuid.UUID,
        month: int,
        year: int,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> GenerationResult:
        """
        Generate, or regenerate, the DRAFT payroll run for a period.

        Tax table and statutory rates are resolved before anything is
        written, so a ConfigurationError leaves no trace. Regeneration
        replaces every entry (keeping irregular payments already added),
        so repeating the call with unchanged data yields identical entries.

        Raises:
            ConfigurationError: unknown/unpublished tax year or missing rates
            PayrollStateError: the period's run is no longer DRAFT
            ConcurrentModificationError: another generation won the race
        """
        label = tax_year_label_for(year, month)
        period_start, period_end = month_bounds(year, month)
        practice = await self._get_practice(practice_id)
        table = await self.tax_tables.get_table(label)
        rates = await self.rates.get_rates(period_end)
        period = period_number(month)

        try:
            run = await self._claim_draft_run(practice_id, month, year, label, table, created_by_id)

            carried_additions = self._additions_by_employee(run)
            employees = await self._eligible_employees(practice_id, period_start, period_end)
            dropped = self._dropped_additions(run, {e.id for e in employees})

            await self.advances.release_from_run(run.id)
            advances = await self.advances.reserve_for_run(run, [e.id for e in employees])

            snapshots = [build_compensation_snapshot(e, period_end) for e in employees]
            calculations = [
                (
                    snapshot,
                    carried_additions.get(snapshot.employee_id, []),
                    calculate_entry(
                        snapshot,
                        table,
                        rates,
                        period,
                        additions=[a for a, _ in carried_additions.get(snapshot.employee_id, [])],
                        advances=advances.get(snapshot.employee_id, []),
                        sdl_exempt=practice.sdl_exempt,
                    ),
                )
                for snapshot in snapshots
            ]

            for entry in list(run.entries):
                await self.db.delete(entry)
            await self.db.flush()

            self.db.add_all([
                self._build_entry(run, snapshot, calculation, additions)
                for snapshot, additions, calculation in calculations
            ])
            await self.db.flush()

            run = await self.get_payroll_run(run.id)
            self._apply_totals(run, run.entries)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Payroll generation")
        except Exception:
            await self.db.rollback()
            raise

        for warning in dropped:
            logger.warning(f"Payroll run {run.period_label}: {warning.message}")
        warnings = dropped + [w for _, _, calculation in calculations for w in calculation.warnings]
        logger.info(
            f"Generated payroll run {run.period_label} for practice {practice_id}: "
            f"{run.employee_count} entries, {len(warnings)} warning(s), generation {run.generation}"
        )

        return GenerationResult(
            run_id=run.id,
            practice_id=practice_id,
            month=month,
            year=year,
            tax_year=label,
            status=run.status,
            generation=run.generation,
            totals=compute_run_totals(run.entries),
            warnings=warnings,
        )

    async def _claim_draft_run(
        self,
        practice_id: uuid.UUID,
        month: int,
        year: int,
        label: str,
        table: TaxTable,
        created_by_id: Optional[uuid.UUID],
    ) -> PayrollRun:
        """
        Lock (or create) the period's run and bump its generation counter.

        The counter update only succeeds against the generation this writer
        read, so two concurrent generations can never interleave entry sets.
        """
        run = await self.get_payroll_run_for_period(practice_id, month, year, for_update=True)
        if run is None:
            run = PayrollRun(
                practice_id=practice_id,
                month=month,
                year=year,
                tax_year=label,
                status=PayrollStatus.DRAFT,
                generation=0,
                created_by_id=created_by_id,
            )
            self.db.add(run)
            try:
                await self.db.flush()
            except IntegrityError:
                await self.db.rollback()
                raise ConcurrentModificationError(
                    f"Payroll run {year}-{month:02d} was created by another request"
                )
            run = await self.get_payroll_run(run.id)
        elif run.status != PayrollStatus.DRAFT:
            raise PayrollStateError(
                f"Payroll run {run.period_label} is {run.status.value} and cannot be regenerated",
                current_status=run.status.value,
                code=ErrorCode.ALREADY_PROCESSED,
            )

        seen_generation = run.generation
        result = await self.db.execute(
            update(PayrollRun)
            .where(
                and_(
                    PayrollRun.id == run.id,
                    PayrollRun.generation == seen_generation,
                    PayrollRun.status == PayrollStatus.DRAFT,
                )
            )
            .values(
                generation=seen_generation + 1,
                generated_at=datetime.now(timezone.utc),
                tax_year=label,
                tax_table_version=table.version,
                updated_by_id=created_by_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Payroll run {run.period_label} was regenerated by another request"
            )
        return await self.get_payroll_run(run.id)

    @staticmethod
    def _additions_by_employee(
        run: PayrollRun,
    ) -> Dict[uuid.UUID, List[Tuple[AdditionInput, Optional[uuid.UUID]]]]:
        """Irregular payments on the current entries, kept across regeneration."""
        carried = {}
        for entry in run.entries:
            carried[entry.employee_id] = [
                (
                    AdditionInput(
                        description=a.description,
                        amount=a.amount,
                        payment_type=a.payment_type,
                    ),
                    a.created_by_id,
                )
                for a in sorted(entry.additions, key=lambda a: (a.created_at, a.description))
            ]
        return carried

    @staticmethod
    def _dropped_additions(run: PayrollRun, eligible_ids: Set[uuid.UUID]) -> List[ValidationWarning]:
        """Irregular payments of employees who are no longer payable this period."""
        return [
            ValidationWarning(
                employee_id=entry.employee_id,
                employee_number=entry.compensation_snapshot["employee_number"],
                code=WarningCode.IRREGULAR_PAYMENT_DROPPED,
                message=f"{addition.description} of {round_cents(addition.amount)} removed: employee is no longer payable",
            )
            for entry in run.entries
            if entry.employee_id not in eligible_ids
            for addition in sorted(entry.additions, key=lambda a: (a.created_at, a.description))
        ]

    def _build_entry(
        self,
        run: PayrollRun,
        snapshot: CompensationSnapshot,
        calculation: EntryCalculation,
        additions: Sequence[Tuple[AdditionInput, Optional[uuid.UUID]]] = (),
    ) -> PayrollEntry:
        entry = PayrollEntry(
            id=uuid.uuid4(),
            payroll_run_id=run.id,
            employee_id=snapshot.employee_id,
            compensation_snapshot=json_safe(snapshot.model_dump()),
            additions=[
                PayrollAddition(
                    description=addition.description,
                    amount=round_cents(addition.amount),
                    payment_type=addition.payment_type,
                    created_by_id=created_by_id,
                )
                for addition, created_by_id in additions
            ],
        )
        self._write_calculation(entry, calculation)
        return entry

    @staticmethod
    def _write_calculation(entry: PayrollEntry, calculation: EntryCalculation) -> None:
        """Copy calculated figures and line items onto an entry."""
        for name in (
            "gross_salary", "total_additions", "fringe_benefits", "taxable_income",
            "paye_amount", "uif_amount", "pension_amount", "medical_aid_amount",
            "other_deductions", "pay_advance_amount", "total_deductions", "net_salary",
            "medical_tax_credit", "employer_uif", "employer_sdl",
        ):
            setattr(entry, name, getattr(calculation, name))
        entry.calculation = json_safe(calculation.calculation)
        entry.validation_warnings = [json_safe(w.model_dump()) for w in calculation.warnings]
        entry.payslip_blocked = calculation.payslip_blocked
        entry.line_items = [
            PayrollLineItem(
                kind=item.kind,
                label=item.label,
                amount=item.amount,
                is_employer_contribution=item.is_employer_contribution,
                reference_id=item.reference_id,
                sort_order=index,
            )
            for index, item in enumerate(calculation.line_items)
        ]

    @staticmethod
    def _apply_totals(run: PayrollRun, entries: Iterable[PayrollEntry]) -> RunTotals:
        totals = compute_run_totals(entries)
        run.employee_count = totals.employee_count
        for total_name, _ in TOTAL_FIELDS:
            setattr(run, total_name, getattr(totals, total_name))
        return totals

    def verify_run_totals(self, run: PayrollRun) -> None:
        """
        Raises:
            ConsistencyError: stored totals differ from the entry sums
        """
        expected = compute_run_totals(run.entries)
        mismatches = []
        if run.employee_count != expected.employee_count:
            mismatches.append({
                "field": "employee_count",
                "stored": run.employee_count,
                "expected": expected.employee_count,
            })
        for total_name, _ in TOTAL_FIELDS:
            stored = round_cents(getattr(run, total_name))
            if stored != getattr(expected, total_name):
                mismatches.append({
                    "field": total_name,
                    "stored": str(stored),
                    "expected": str(getattr(expected, total_name)),
                })
        if mismatches:
            raise ConsistencyError(
                f"Payroll run {run.period_label} totals do not equal the sum of its entries",
                discrepancies=mismatches,
                code=ErrorCode.TOTALS_MISMATCH,
            )

    # ===========================================
    # IRREGULAR PAYMENTS
    # ===========================================

    def _require_draft(self, run: PayrollRun, action: str) -> None:
        if not run.is_editable:
            raise PayrollStateError(
                f"Cannot {action}: payroll run {run.period_label} is {run.status.value}",
                current_status=run.status.value,
                code=ErrorCode.CANNOT_MODIFY,
            )

    def _find_entry(self, run: PayrollRun, employee_id: uuid.UUID) -> PayrollEntry:
        for entry in run.entries:
            if entry.employee_id == employee_id:
                return entry
        raise NotFoundError("Payroll entry for employee", employee_id)

    async def add_irregular_payment(
        self,
        run_id: uuid.UUID,
        employee_id: uuid.UUID,
        description: str,
        amount: Decimal,
        payment_type: PaymentType = PaymentType.BONUS,
        created_by_id: Optional[uuid.UUID] = None,
    ) -> PayrollEntry:
        """Add a bonus or other irregular payment to a DRAFT entry and recalculate."""
        amount = round_cents(amount)
        if amount <= 0:
            raise PayrollValidationError(
                "Irregular payment must be positive", field="amount", code=ErrorCode.INVALID_AMOUNT,
            )

        run = await self.get_payroll_run(run_id, for_update=True)
        self._require_draft(run, "add an irregular payment")
        entry = self._find_entry(run, employee_id)

        try:
            self.db.add(PayrollAddition(
                payroll_entry_id=entry.id,
                description=description,
                amount=amount,
                payment_type=payment_type,
                created_by_id=created_by_id,
            ))
            await self.db.flush()
            entry = await self._recalculate_entry(run_id, employee_id)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Adding irregular payment")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Added {payment_type.value} of {amount} to payroll run {run.period_label}")
        return entry

    async def remove_irregular_payment(self, addition_id: uuid.UUID) -> PayrollEntry:
        addition = await self.db.get(PayrollAddition, addition_id)
        if addition is None:
            raise NotFoundError("Irregular payment", addition_id)
        entry = await self.db.get(PayrollEntry, addition.payroll_entry_id)
        run = await self.get_payroll_run(entry.payroll_run_id, for_update=True)
        self._require_draft(run, "remove an irregular payment")

        try:
            await self.db.delete(addition)
            await self.db.flush()
            entry = await self._recalculate_entry(run.id, entry.employee_id)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Removing irregular payment")
        except Exception:
            await self.db.rollback()
            raise
        return entry

    async def attach_pay_advance(self, advance_id: uuid.UUID, run_id: uuid.UUID) -> PayrollEntry:
        """
        Reserve an approved pay advance for a DRAFT run and recover it on
        the employee's entry.

        Raises:
            PayrollStateError: the advance is held by another run or already deducted
        """
        run = await self.get_payroll_run(run_id, for_update=True)
        self._require_draft(run, "attach a pay advance")

        try:
            advance = await self.advances.attach_to_run(advance_id, run)
            self._find_entry(run, advance.employee_id)
            entry = await self._recalculate_entry(run.id, advance.employee_id)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Attaching pay advance")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Attached pay advance {advance_id} to payroll run {run.period_label}")
        return entry

    async def _recalculate_entry(self, run_id: uuid.UUID, employee_id: uuid.UUID) -> PayrollEntry:
        """Recompute one entry from its stored snapshot, then the run totals."""
        run = await self.get_payroll_run(run_id)
        entry = self._find_entry(run, employee_id)
        practice = await self._get_practice(run.practice_id)
        table = await self.tax_tables.get_table(run.tax_year)
        rates = await self.rates.get_rates(month_bounds(run.year, run.month)[1])

        snapshot = CompensationSnapshot.model_validate(entry.compensation_snapshot)
        additions = [
            AdditionInput(
                description=a.description,
                amount=a.amount,
                payment_type=a.payment_type,
            )
            for a in sorted(entry.additions, key=lambda a: (a.created_at, a.description))
        ]
        advances = [
            AdvanceInput(advance_id=a.id, amount=a.amount)
            for a in await self.advances.advances_for_run(run.id, employee_id)
        ]
        calculation = calculate_entry(
            snapshot,
            table,
            rates,
            period_number(run.month),
            additions=additions,
            advances=advances,
            sdl_exempt=practice.sdl_exempt,
        )

        self._write_calculation(entry, calculation)
        await self.db.flush()

        run = await self.get_payroll_run(run_id)
        self._apply_totals(run, run.entries)
        await self.db.flush()
        return self._find_entry(run, employee_id)

    # ===========================================
    # STATE TRANSITIONS
    # ===========================================

    async def _transition(
        self,
        run: PayrollRun,
        from_status: PayrollStatus,
        to_status: PayrollStatus,
        **values,
    ) -> None:
        """Single-row guarded status change; fails if another writer moved first."""
        result = await self.db.execute(
            update(PayrollRun)
            .where(
                and_(
                    PayrollRun.id == run.id,
                    PayrollRun.status == from_status,
                    PayrollRun.generation == run.generation,
                )
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Payroll run {run.period_label} changed status concurrently"
            )
        run.status = to_status
        for name, value in values.items():
            setattr(run, name, value)

    async def process_payroll_run(
        self,
        run_id: uuid.UUID,
        processed_by_id: Optional[uuid.UUID] = None,
    ) -> PayrollRun:
        """
        DRAFT -> PROCESSED.

        Locks the entries, applies them to the YTD ledgers and writes one
        audit row per entry in a single transaction. On any failure the
        transaction is rolled back and the run stays DRAFT.

        Raises:
            PayrollValidationError: blocking validation issues (e.g. missing tax number)
            ConsistencyError: run totals differ from the entries
            TransientError: persistence failed; safe to retry
        """
        run = await self.get_payroll_run(run_id, for_update=True)
        if run.status != PayrollStatus.DRAFT:
            raise PayrollStateError(
                f"Only DRAFT payroll can be processed, run {run.period_label} is {run.status.value}",
                current_status=run.status.value,
                code=ErrorCode.ALREADY_PROCESSED,
            )
        if not run.entries:
            raise PayrollValidationError(f"Payroll run {run.period_label} has no entries")

        self.verify_run_totals(run)

        blocking = [
            warning
            for entry in run.entries
            for warning in entry.validation_warnings
            if warning.get("severity") == ValidationSeverity.ERROR.value
        ]
        if blocking:
            raise PayrollValidationError(
                f"Payroll run {run.period_label} has {len(blocking)} blocking validation issue(s)",
                details={"issues": blocking},
            )

        table = await self.tax_tables.get_table(run.tax_year)
        if run.tax_table_version != table.version:
            raise ConsistencyError(
                f"Payroll run {run.period_label} was calculated with a different tax table",
                discrepancies=[{"run_version": run.tax_table_version, "table_version": table.version}],
            )

        try:
            await self._transition(
                run,
                PayrollStatus.DRAFT,
                PayrollStatus.PROCESSED,
                processed_at=datetime.now(timezone.utc),
                processed_by_id=processed_by_id,
            )
            await self.ytd.apply_run(run)
            for entry in run.entries:
                await self.audit.record(entry, run, table.version, recorded_by_id=processed_by_id)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Payroll processing")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Processed payroll run {run.period_label} ({run.employee_count} entries)")
        return await self.get_payroll_run(run_id)

    async def mark_payroll_paid(
        self,
        run_id: uuid.UUID,
        payment_date: Optional[date] = None,
    ) -> PayrollRun:
        """PROCESSED -> PAID; reserved pay advances become DEDUCTED."""
        run = await self.get_payroll_run(run_id, for_update=True)
        if run.status != PayrollStatus.PROCESSED:
            raise PayrollStateError(
                f"Only processed payroll can be marked as paid, run {run.period_label} is {run.status.value}",
                current_status=run.status.value,
            )

        try:
            await self._transition(
                run,
                PayrollStatus.PROCESSED,
                PayrollStatus.PAID,
                paid_at=datetime.now(timezone.utc),
                payment_date=payment_date or month_bounds(run.year, run.month)[1],
            )
            await self.advances.mark_deducted_for_run(run.id)
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Marking payroll paid")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Payroll run {run.period_label} marked paid")
        return await self.get_payroll_run(run_id)

    async def reverse_payroll_run(
        self,
        run_id: uuid.UUID,
        reason: str,
        reversed_by_id: Optional[uuid.UUID] = None,
    ) -> PayrollRun:
        """
        PROCESSED -> DRAFT through an audited reversal.

        YTD ledgers are decremented and a REVERSAL audit row is appended per
        entry. Paid runs cannot be reversed.
        """
        if not reason or not reason.strip():
            raise PayrollValidationError("A reversal reason is required", field="reason")

        run = await self.get_payroll_run(run_id, for_update=True)
        if run.status != PayrollStatus.PROCESSED:
            raise PayrollStateError(
                f"Only processed, unpaid payroll can be reversed, run {run.period_label} is {run.status.value}",
                current_status=run.status.value,
            )
        if run.declaration_submitted:
            raise PayrollStateError(
                f"The declaration for payroll run {run.period_label} has been submitted; it cannot be reversed",
                current_status=run.status.value,
                code=ErrorCode.CANNOT_MODIFY,
            )

        try:
            await self.ytd.reverse_run(run)
            for entry in run.entries:
                await self.audit.record(
                    entry,
                    run,
                    run.tax_table_version,
                    event=AuditEvent.REVERSAL,
                    recorded_by_id=reversed_by_id,
                    reason=reason.strip(),
                )
            await self._transition(
                run,
                PayrollStatus.PROCESSED,
                PayrollStatus.DRAFT,
                processed_at=None,
                processed_by_id=None,
                reversal_count=run.reversal_count + 1,
            )
            await self.db.commit()
        except PayrollError:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Payroll reversal")
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(f"Payroll run {run.period_label} reversed to DRAFT: {reason.strip()}")
        return await self.get_payroll_run(run_id)

    async def delete_payroll_run(self, run_id: uuid.UUID) -> None:
        """Delete a DRAFT run with its entries and release its pay advances."""
        run = await self.get_payroll_run(run_id, for_update=True)
        self._require_draft(run, "delete the run")
        if run.reversal_count:
            raise PayrollStateError(
                f"Payroll run {run.period_label} has audited history and cannot be deleted",
                current_status=run.status.value,
                code=ErrorCode.CANNOT_MODIFY,
            )

        try:
            await self.advances.release_from_run(run.id)
            await self.db.delete(run)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Deleting payroll run")
        except Exception:
            await self.db.rollback()
            raise
        logger.info(f"Deleted DRAFT payroll run {run.period_label}")

    # ===========================================
    # BANK SCHEDULE
    # ===========================================

    async def generate_bank_schedule(self, run_id: uuid.UUID) -> List[BankScheduleRow]:
        """Net pay instructions for a processed run; blocked payslips are left out."""
        run = await self.get_payroll_run(run_id)
        if run.status == PayrollStatus.DRAFT:
            raise PayrollStateError(
                "Bank schedules are only produced for processed payroll",
                current_status=run.status.value,
            )

        rows = []
        for entry in sorted(run.entries, key=lambda e: e.employee.employee_number):
            employee = entry.employee
            if entry.payslip_blocked or entry.net_salary <= 0:
                continue
            rows.append(BankScheduleRow(
                employee_number=employee.employee_number,
                employee_name=employee.bank_account_holder or employee.full_name,
                bank_name=employee.bank_name,
                branch_code=employee.bank_branch_code,
                account_number=employee.bank_account_number,
                account_type=employee.bank_account_type,
                amount=entry.net_salary,
                reference=f"SALARY {run.period_label}",
            ))
        return rows

    # ===========================================
    # ACCOUNTANT EXPORTS
    # ===========================================

    async def generate_payroll_register(self, run_id: uuid.UUID) -> List[PayrollRegisterRow]:
        """Per-employee figures of a run as they were calculated, in employee number order."""
        run = await self.get_payroll_run(run_id)
        rows = []
        for entry in run.entries:
            snapshot = entry.compensation_snapshot
            rows.append(PayrollRegisterRow(
                employee_number=snapshot["employee_number"],
                employee_name=snapshot["full_name"],
                gross_salary=entry.gross_salary,
                total_additions=entry.total_additions,
                paye=entry.paye_amount,
                uif_employee=entry.uif_amount,
                pension=entry.pension_amount,
                medical_aid=entry.medical_aid_amount,
                other_deductions=entry.other_deductions,
                pay_advance=entry.pay_advance_amount,
                total_deductions=entry.total_deductions,
                net_salary=entry.net_salary,
                uif_employer=entry.employer_uif,
                sdl_employer=entry.employer_sdl,
            ))
        return sorted(rows, key=lambda r: r.employee_number)

    async def mark_declaration_submitted(self, run_id: uuid.UUID) -> PayrollRun:
        """
        Record that the run's monthly declaration was filed.

        Raises:
            PayrollStateError: the run is still DRAFT
        """
        run = await self.get_payroll_run(run_id, for_update=True)
        if run.status == PayrollStatus.DRAFT:
            raise PayrollStateError(
                f"Payroll run {run.period_label} must be processed before its declaration is submitted",
                current_status=run.status.value,
            )
        if run.declaration_submitted:
            return run

        try:
            run.declaration_submitted = True
            run.declaration_submitted_at = datetime.now(timezone.utc)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise wrap_database_error(e, "Marking declaration submitted")
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Monthly declaration for payroll run {run.period_label} marked submitted")
        return await self.get_payroll_run(run_id)
