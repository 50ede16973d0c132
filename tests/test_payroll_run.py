"""
Practice Payroll - Payroll Run Tests

Generation, irregular payments and the DRAFT -> PROCESSED -> PAID lifecycle.
"""

import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from practice_payroll.exceptions import (
    ConcurrentModificationError,
    ConfigurationError,
    ConsistencyError,
    ErrorCode,
    NotFoundError,
    PayrollStateError,
    PayrollValidationError,
)
from practice_payroll.models import (
    EmploymentStatus,
    LineItemKind,
    PayFrequency,
    PayrollStatus,
)
from practice_payroll.schemas.payroll import WarningCode
from practice_payroll.services.audit_service import PayrollAuditService
from practice_payroll.services.compliance_report_service import bank_schedule_to_csv, payroll_register_to_csv
from practice_payroll.services.pay_advance_service import PayAdvanceService
from practice_payroll.services.payroll_service import (
    PayrollService,
    build_compensation_snapshot,
    calculate_entry,
)
from practice_payroll.services.ytd_service import YTDService


pytestmark = pytest.mark.asyncio


async def generate_march(db_session, practice):
    return await PayrollService(db_session).generate_payroll_run(practice.id, 3, 2024)


class TestGeneration:
    """Generating a DRAFT run for a practice and month."""

    async def test_monthly_figures_for_30k_salary(self, db_session, sars_tables, practice, employee):
        """R30,000: PAYE 4,783.08, UIF 177.12 each way, SDL 300.00."""
        result = await generate_march(db_session, practice)

        assert result.status == PayrollStatus.DRAFT
        assert result.tax_year == "2024/2025"
        assert result.generation == 1
        assert result.totals.employee_count == 1
        assert result.totals.total_gross == Decimal("30000.00")
        assert result.totals.total_paye == Decimal("4783.08")
        assert result.totals.total_uif_employee == Decimal("177.12")
        assert result.totals.total_employer_uif == Decimal("177.12")
        assert result.totals.total_employer_sdl == Decimal("300.00")
        assert result.totals.total_net == Decimal("25039.80")
        assert result.warnings == []

    async def test_line_items_are_tagged(self, db_session, sars_tables, practice, employee):
        """Employer contributions are flagged and never reduce net pay."""
        result = await generate_march(db_session, practice)
        run = await PayrollService(db_session).get_payroll_run(result.run_id)
        items = {(i.kind, i.is_employer_contribution): i.amount for i in run.entries[0].line_items}

        assert items[(LineItemKind.PAYE, False)] == Decimal("4783.08")
        assert items[(LineItemKind.UIF, False)] == Decimal("177.12")
        assert items[(LineItemKind.UIF, True)] == Decimal("177.12")
        assert items[(LineItemKind.SDL, True)] == Decimal("300.00")

    async def test_regeneration_is_idempotent(self, db_session, sars_tables, practice, employee):
        """Regenerating with unchanged data yields identical entries."""
        first = await generate_march(db_session, practice)
        second = await generate_march(db_session, practice)

        assert second.run_id == first.run_id
        assert second.generation == 2
        assert second.totals == first.totals

        run = await PayrollService(db_session).get_payroll_run(first.run_id)
        assert len(run.entries) == 1

    async def test_entry_totals_add_up(self, db_session, sars_tables, practice, employee_factory, deduction_builders):
        """net = gross + additions - (PAYE + UIF + pension + medical aid + other)."""
        await employee_factory(deductions=[
            deduction_builders["pension"](),
            deduction_builders["medical_aid"](),
        ])
        result = await generate_march(db_session, practice)
        entry = (await PayrollService(db_session).get_payroll_run(result.run_id)).entries[0]

        assert entry.pension_amount == Decimal("2250.00")
        assert entry.medical_aid_amount == Decimal("3500.00")
        assert entry.total_deductions == (
            entry.paye_amount + entry.uif_amount + entry.pension_amount
            + entry.medical_aid_amount + entry.other_deductions
        )
        assert entry.net_salary == entry.gross_salary + entry.total_additions - entry.total_deductions

    async def test_medical_credits_reduce_paye(self, db_session, sars_tables, practice, employee_factory, deduction_builders):
        """Member with two dependants: 4,783.08 less 974.00 in credits."""
        await employee_factory(
            deductions=[deduction_builders["medical_aid"]()],
            medical_aid_dependants=2,
        )
        result = await generate_march(db_session, practice)
        entry = (await PayrollService(db_session).get_payroll_run(result.run_id)).entries[0]

        assert entry.medical_tax_credit == Decimal("974.00")
        assert entry.paye_amount == Decimal("3809.08")
        assert entry.net_salary == Decimal("22513.80")

    async def test_fringe_benefit_taxed_but_not_paid(self, db_session, sars_tables, practice, employee_factory, deduction_builders):
        """A R2,000 company car benefit raises PAYE; UIF stays on cash pay."""
        await employee_factory(fringe_benefits=[deduction_builders["car_allowance"]()])
        result = await generate_march(db_session, practice)
        entry = (await PayrollService(db_session).get_payroll_run(result.run_id)).entries[0]

        assert entry.fringe_benefits == Decimal("2000.00")
        assert entry.taxable_income == Decimal("32000.00")
        assert entry.paye_amount == Decimal("5359.33")
        assert entry.uif_amount == Decimal("177.12")
        assert entry.net_salary == Decimal("24463.55")

    async def test_ineligible_employees_are_skipped(self, db_session, sars_tables, practice, employee_factory):
        """Terminated, inactive and unsalaried employees get no entry."""
        await employee_factory("EMP001")
        await employee_factory("EMP002", employment_status=EmploymentStatus.TERMINATED)
        await employee_factory("EMP003", is_active=False)
        await employee_factory("EMP004", gross_salary=None)
        await employee_factory("EMP005", start_date=date(2024, 4, 1))

        result = await generate_march(db_session, practice)

        assert result.totals.employee_count == 1

    async def test_weekly_salary_converted_to_monthly(self, db_session, sars_tables, practice, employee_factory):
        """R5,000 per week is 5,000 x 52 / 12 per month."""
        await employee_factory(gross_salary=Decimal("5000.00"), pay_frequency=PayFrequency.WEEKLY)
        result = await generate_march(db_session, practice)

        assert result.totals.total_gross == Decimal("21666.67")

    async def test_income_below_threshold_has_no_paye(self, db_session, sars_tables, practice, employee_factory):
        await employee_factory(gross_salary=Decimal("7000.00"))
        result = await generate_march(db_session, practice)

        assert result.totals.total_paye == Decimal("0.00")
        assert result.totals.total_uif_employee == Decimal("70.00")
        assert result.totals.total_net == Decimal("6930.00")

    async def test_sdl_exempt_practice(self, db_session, sars_tables, practice, employee):
        practice.sdl_exempt = True
        await db_session.commit()

        result = await generate_march(db_session, practice)

        assert result.totals.total_employer_sdl == Decimal("0.00")

    async def test_missing_banking_details_only_blocks_payslip(self, db_session, sars_tables, practice, employee_factory):
        """The entry is still computed; delivery is withheld with a warning."""
        await employee_factory(bank_account_number=None)
        result = await generate_march(db_session, practice)
        entry = (await PayrollService(db_session).get_payroll_run(result.run_id)).entries[0]

        assert entry.payslip_blocked is True
        assert entry.net_salary == Decimal("25039.80")
        assert [w.code for w in result.warnings] == [WarningCode.MISSING_BANKING_DETAILS]
        assert not result.has_blocking_issues

    async def test_unknown_tax_year_writes_nothing(self, db_session, sars_tables, practice, employee):
        """No published table for 2030/2031: nothing is persisted."""
        service = PayrollService(db_session)

        with pytest.raises(ConfigurationError) as exc:
            await service.generate_payroll_run(practice.id, 3, 2030)

        assert exc.value.code == ErrorCode.UNKNOWN_TAX_YEAR
        assert await service.get_payroll_run_for_period(practice.id, 3, 2030) is None

    async def test_unknown_practice(self, db_session, sars_tables, practice):
        with pytest.raises(NotFoundError):
            await PayrollService(db_session).generate_payroll_run(uuid.uuid4(), 3, 2024)

    async def test_invalid_month(self, db_session, sars_tables, practice):
        with pytest.raises(PayrollValidationError):
            await PayrollService(db_session).generate_payroll_run(practice.id, 13, 2024)


class TestCalculationIsPure:
    """calculate_entry depends only on its inputs."""

    async def test_same_inputs_same_result(self, db_session, sars_tables, practice, employee, table_2024, statutory_rates):
        snapshot = build_compensation_snapshot(employee, date(2024, 3, 31))
        first = calculate_entry(snapshot, table_2024, statutory_rates, period=1)
        second = calculate_entry(snapshot, table_2024, statutory_rates, period=1)

        assert first == second
        assert first.paye_amount == Decimal("4783.08")
        assert first.calculation["annual_paye"]["annual_paye"] == Decimal("57397.00")


class TestIrregularPayments:
    """Bonuses and other irregular payments on DRAFT entries."""

    async def test_bonus_taxed_on_annual_difference(self, db_session, sars_tables, practice, employee):
        """R10,000 bonus adds R2,600 PAYE; UIF stays capped and SDL rises."""
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        entry = await service.add_irregular_payment(result.run_id, employee.id, "Performance bonus", Decimal("10000"))

        assert entry.total_additions == Decimal("10000.00")
        assert entry.paye_amount == Decimal("7383.08")
        assert entry.uif_amount == Decimal("177.12")
        assert entry.employer_sdl == Decimal("400.00")
        assert entry.net_salary == Decimal("32439.80")

        run = await service.get_payroll_run(result.run_id)
        assert run.total_additions == Decimal("10000.00")
        assert run.total_paye == Decimal("7383.08")
        service.verify_run_totals(run)

    async def test_bonus_survives_regeneration(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.add_irregular_payment(result.run_id, employee.id, "Performance bonus", Decimal("10000"))

        regenerated = await generate_march(db_session, practice)

        assert regenerated.totals.total_additions == Decimal("10000.00")
        assert regenerated.totals.total_paye == Decimal("7383.08")

    async def test_regeneration_reports_dropped_bonus(self, db_session, sars_tables, practice, employee_factory):
        """A bonus for an employee who is no longer payable is reported when the run is regenerated."""
        await employee_factory()
        leaver = await employee_factory(employee_number="EMP002", first_name="Sipho")
        result = await generate_march(db_session, practice)
        await PayrollService(db_session).add_irregular_payment(
            result.run_id, leaver.id, "Performance bonus", Decimal("5000")
        )
        leaver.is_active = False
        await db_session.commit()

        regenerated = await generate_march(db_session, practice)

        assert regenerated.totals.employee_count == 1
        assert regenerated.totals.total_additions == Decimal("0.00")
        [dropped] = [w for w in regenerated.warnings if w.code == WarningCode.IRREGULAR_PAYMENT_DROPPED]
        assert dropped.employee_id == leaver.id
        assert dropped.employee_number == "EMP002"
        assert dropped.message.startswith("Performance bonus of 5000.00")
        assert not regenerated.has_blocking_issues

    async def test_regeneration_without_leavers_reports_nothing(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        await PayrollService(db_session).add_irregular_payment(result.run_id, employee.id, "Bonus", Decimal("1000"))

        regenerated = await generate_march(db_session, practice)

        assert regenerated.warnings == []

    async def test_removing_bonus_restores_figures(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        entry = await service.add_irregular_payment(result.run_id, employee.id, "Performance bonus", Decimal("10000"))

        entry = await service.remove_irregular_payment(entry.additions[0].id)

        assert entry.total_additions == Decimal("0.00")
        assert entry.paye_amount == Decimal("4783.08")

    async def test_non_positive_amount_rejected(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)

        with pytest.raises(PayrollValidationError) as exc:
            await PayrollService(db_session).add_irregular_payment(result.run_id, employee.id, "Bonus", Decimal("0"))
        assert exc.value.code == ErrorCode.INVALID_AMOUNT

    async def test_rejected_once_processed(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        with pytest.raises(PayrollStateError) as exc:
            await service.add_irregular_payment(result.run_id, employee.id, "Late bonus", Decimal("500"))
        assert exc.value.code == ErrorCode.CANNOT_MODIFY


class TestLifecycle:
    """DRAFT -> PROCESSED -> PAID and audited reversal."""

    async def test_process_and_pay(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        processed = await service.process_payroll_run(result.run_id)
        assert processed.status == PayrollStatus.PROCESSED
        assert processed.processed_at is not None

        paid = await service.mark_payroll_paid(result.run_id)
        assert paid.status == PayrollStatus.PAID
        assert paid.payment_date == date(2024, 3, 31)

    async def test_processed_run_cannot_be_regenerated(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        await PayrollService(db_session).process_payroll_run(result.run_id)

        with pytest.raises(PayrollStateError) as exc:
            await generate_march(db_session, practice)
        assert exc.value.code == ErrorCode.ALREADY_PROCESSED

    async def test_processing_twice_rejected(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        with pytest.raises(PayrollStateError):
            await service.process_payroll_run(result.run_id)

    async def test_paid_requires_processed(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)

        with pytest.raises(PayrollStateError):
            await PayrollService(db_session).mark_payroll_paid(result.run_id)

    async def test_missing_tax_number_blocks_processing(self, db_session, sars_tables, practice, employee_factory):
        """A blocking issue leaves the run DRAFT with no YTD or audit written."""
        employee = await employee_factory(tax_number=None)
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        assert result.has_blocking_issues
        with pytest.raises(PayrollValidationError):
            await service.process_payroll_run(result.run_id)

        run = await service.get_payroll_run(result.run_id)
        assert run.status == PayrollStatus.DRAFT
        assert await YTDService(db_session).get_ledger(employee.id, "2024/2025") is None
        assert await PayrollAuditService(db_session).list_for_run(result.run_id) == []

    async def test_failed_audit_write_leaves_run_draft(self, db_session, sars_tables, practice, employee, monkeypatch):
        """An unexpected error while auditing undoes the status change and the YTD update."""
        employee_id = employee.id
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        async def broken_record(*args, **kwargs):
            raise TypeError("unserialisable calculation")

        monkeypatch.setattr(service.audit, "record", broken_record)
        with pytest.raises(TypeError):
            await service.process_payroll_run(result.run_id)

        # A later commit on the same session must not persist the half-done transition
        await PayAdvanceService(db_session).request_advance(employee_id, Decimal("1000.00"))

        run = await service.get_payroll_run(result.run_id)
        assert run.status == PayrollStatus.DRAFT
        assert run.processed_at is None
        assert await YTDService(db_session).get_ledger(employee_id, "2024/2025") is None
        assert await PayrollAuditService(db_session).list_for_run(result.run_id) == []

    async def test_failed_ytd_update_leaves_run_draft(self, db_session, sars_tables, practice, employee, monkeypatch):
        employee_id = employee.id
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        async def broken_apply(run):
            raise ValueError("ledger unavailable")

        monkeypatch.setattr(service.ytd, "apply_run", broken_apply)
        with pytest.raises(ValueError):
            await service.process_payroll_run(result.run_id)
        await db_session.commit()

        run = await service.get_payroll_run(result.run_id)
        assert run.status == PayrollStatus.DRAFT
        assert await YTDService(db_session).get_ledger(employee_id, "2024/2025") is None

        monkeypatch.undo()
        processed = await PayrollService(db_session).process_payroll_run(result.run_id)
        assert processed.status == PayrollStatus.PROCESSED

    async def test_failed_reversal_leaves_run_processed(self, db_session, sars_tables, practice, employee, monkeypatch):
        employee_id = employee.id
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        async def broken_record(*args, **kwargs):
            raise TypeError("unserialisable calculation")

        monkeypatch.setattr(service.audit, "record", broken_record)
        with pytest.raises(TypeError):
            await service.reverse_payroll_run(result.run_id, reason="Wrong salary")
        await db_session.commit()

        run = await service.get_payroll_run(result.run_id)
        assert run.status == PayrollStatus.PROCESSED
        assert run.reversal_count == 0
        ytd = await YTDService(db_session).get_ytd(employee_id, "2024/2025")
        assert ytd.ytd_paye == Decimal("4783.08")

    async def test_reversal_returns_run_to_draft(self, db_session, sars_tables, practice, employee):
        """Reversal undoes YTD and appends a REVERSAL audit row; reprocessing works."""
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        run = await service.reverse_payroll_run(result.run_id, reason="Wrong bank account captured")

        assert run.status == PayrollStatus.DRAFT
        assert run.reversal_count == 1
        ytd = await YTDService(db_session).get_ytd(employee.id, "2024/2025")
        assert ytd.ytd_paye == Decimal("0.00")
        assert ytd.periods_processed == 0

        await service.process_payroll_run(result.run_id)
        logs = await PayrollAuditService(db_session).list_for_employee(employee.id, "2024/2025")
        assert [log.sequence for log in logs] == [1, 2, 3]
        assert logs[1].paye == Decimal("-4783.08")
        ytd = await YTDService(db_session).get_ytd(employee.id, "2024/2025")
        assert ytd.ytd_paye == Decimal("4783.08")

    async def test_reversal_requires_reason(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        with pytest.raises(PayrollValidationError):
            await service.reverse_payroll_run(result.run_id, reason="  ")

    async def test_paid_run_cannot_be_reversed(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)
        await service.mark_payroll_paid(result.run_id)

        with pytest.raises(PayrollStateError):
            await service.reverse_payroll_run(result.run_id, reason="Too late")

    async def test_compensation_change_leaves_processed_run_intact(self, db_session, sars_tables, practice, employee):
        """A raise applies to the next run, never to a processed one."""
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)

        employee.gross_salary = Decimal("40000.00")
        await db_session.commit()

        march = await service.get_payroll_run(result.run_id)
        april = await service.generate_payroll_run(practice.id, 4, 2024)

        assert march.entries[0].gross_salary == Decimal("30000.00")
        assert march.total_paye == Decimal("4783.08")
        assert april.totals.total_gross == Decimal("40000.00")

    async def test_stale_writer_rejected(self, db_session, sars_tables, practice, employee):
        """A status change against an old generation fails."""
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        run = await service.get_payroll_run(result.run_id)
        stale = SimpleNamespace(id=run.id, generation=run.generation - 1, period_label=run.period_label)

        with pytest.raises(ConcurrentModificationError):
            await service._transition(stale, PayrollStatus.DRAFT, PayrollStatus.PROCESSED)

    async def test_tampered_totals_detected(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        run = await service.get_payroll_run(result.run_id)
        run.total_paye = Decimal("1.00")

        with pytest.raises(ConsistencyError) as exc:
            service.verify_run_totals(run)
        assert exc.value.code == ErrorCode.TOTALS_MISMATCH


class TestRunManagement:
    """Listing, deleting, bank schedules and accountant exports."""

    async def test_list_runs(self, db_session, sars_tables, practice, employee):
        service = PayrollService(db_session)
        await service.generate_payroll_run(practice.id, 3, 2024)
        await service.generate_payroll_run(practice.id, 4, 2024)

        runs = await service.list_payroll_runs(practice.id, year=2024)

        assert [run.month for run in runs] == [4, 3]

    async def test_delete_draft_run(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        await service.delete_payroll_run(result.run_id)

        with pytest.raises(NotFoundError):
            await service.get_payroll_run(result.run_id)

    async def test_reversed_run_cannot_be_deleted(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)
        await service.reverse_payroll_run(result.run_id, reason="Recalculate")

        with pytest.raises(PayrollStateError):
            await service.delete_payroll_run(result.run_id)

    async def test_bank_schedule_leaves_out_blocked_payslips(self, db_session, sars_tables, practice, employee_factory):
        await employee_factory("EMP001")
        await employee_factory("EMP002", first_name="Pieter", last_name="Botha", bank_account_number=None)
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        with pytest.raises(PayrollStateError):
            await service.generate_bank_schedule(result.run_id)

        await service.process_payroll_run(result.run_id)
        rows = await service.generate_bank_schedule(result.run_id)

        assert [r.employee_number for r in rows] == ["EMP001"]
        assert rows[0].amount == Decimal("25039.80")
        assert rows[0].reference == "SALARY 2024-03"

        content, filename = bank_schedule_to_csv(rows, "2024-03")
        lines = content.decode("utf-8").splitlines()
        assert filename == "bank_schedule_2024-03.csv"
        assert lines[0] == "employee_number,employee_name,bank_name,branch_code,account_number,account_type,amount,reference"
        assert lines[1] == "EMP001,Thandi Nkosi,First National Bank,250655,1234567890,cheque,25039.80,SALARY 2024-03"

    async def test_payroll_register(self, db_session, sars_tables, practice, employee_factory):
        """One line per employee as calculated, closed by a totals line."""
        await employee_factory("EMP002", first_name="Pieter", last_name="Botha")
        await employee_factory("EMP001")
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        rows = await service.generate_payroll_register(result.run_id)

        assert [r.employee_number for r in rows] == ["EMP001", "EMP002"]
        assert rows[1].employee_name == "Pieter Botha"
        assert rows[0].total_deductions == Decimal("4960.20")

        content, filename = payroll_register_to_csv(rows, "2024-03")
        lines = content.decode("utf-8").splitlines()
        assert filename == "payroll_register_2024-03.csv"
        assert lines[0] == (
            "employee_number,employee_name,gross_salary,total_additions,paye,uif_employee,pension,"
            "medical_aid,other_deductions,pay_advance,total_deductions,net_salary,uif_employer,sdl_employer"
        )
        assert lines[1] == "EMP001,Thandi Nkosi,30000.00,0.00,4783.08,177.12,0.00,0.00,0.00,0.00,4960.20,25039.80,177.12,300.00"
        assert lines[3] == ",TOTALS,60000.00,0.00,9566.16,354.24,0.00,0.00,0.00,0.00,9920.40,50079.60,354.24,600.00"
        assert len(lines) == 4

    async def test_declaration_submission(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)

        with pytest.raises(PayrollStateError):
            await service.mark_declaration_submitted(result.run_id)

        await service.process_payroll_run(result.run_id)
        run = await service.mark_declaration_submitted(result.run_id)
        assert run.declaration_submitted is True
        submitted_at = run.declaration_submitted_at
        assert submitted_at is not None

        again = await service.mark_declaration_submitted(result.run_id)
        assert again.declaration_submitted_at == submitted_at

    async def test_submitted_declaration_blocks_reversal(self, db_session, sars_tables, practice, employee):
        result = await generate_march(db_session, practice)
        service = PayrollService(db_session)
        await service.process_payroll_run(result.run_id)
        await service.mark_declaration_submitted(result.run_id)

        with pytest.raises(PayrollStateError) as exc:
            await service.reverse_payroll_run(result.run_id, reason="Wrong salary")
        assert exc.value.code == ErrorCode.CANNOT_MODIFY

        run = await service.get_payroll_run(result.run_id)
        assert run.status == PayrollStatus.PROCESSED
