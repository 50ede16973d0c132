"""
Practice Payroll - Payroll Audit Log Tests

Append-only calculation trail and its hash chain.
"""

from decimal import Decimal

import pytest

from practice_payroll.exceptions import ConsistencyError, ErrorCode
from practice_payroll.models import AuditEvent
from practice_payroll.services.audit_service import PayrollAuditService
from practice_payroll.services.payroll_service import PayrollService


pytestmark = pytest.mark.asyncio

TAX_YEAR = "2024/2025"


async def process_month(db_session, practice, month, year=2024):
    service = PayrollService(db_session)
    result = await service.generate_payroll_run(practice.id, month, year)
    await service.process_payroll_run(result.run_id)
    return await service.get_payroll_run(result.run_id)


class TestAuditRows:

    async def test_one_row_per_entry_on_process(self, db_session, sars_tables, practice, employee_factory):
        await employee_factory("EMP001")
        await employee_factory("EMP002", first_name="Pieter", last_name="Botha")
        run = await process_month(db_session, practice, 3)

        logs = await PayrollAuditService(db_session).list_for_run(run.id)

        assert len(logs) == 2
        assert {log.event for log in logs} == {AuditEvent.CALCULATION}
        assert {log.sequence for log in logs} == {1}

    async def test_row_captures_inputs_and_intermediate_values(self, db_session, sars_tables, practice, employee):
        run = await process_month(db_session, practice, 3)
        entry = run.entries[0]

        [log] = await PayrollAuditService(db_session).list_for_entry(entry.id)

        assert log.tax_table_version == run.tax_table_version
        assert log.period_month == 3
        assert log.period_year == 2024
        assert log.paye == Decimal("4783.08")
        assert log.sdl == Decimal("300.00")
        assert log.input_snapshot["gross_monthly"] == "30000.00"
        assert log.input_snapshot["tax_number"] == "0123456789"
        assert log.calculation["period_number"] == 1
        assert log.calculation["annual_paye"]["annual_paye"] == "57397.00"
        assert log.calculation["paye"] == "4783.08"
        assert log.previous_hash is None
        assert len(log.content_hash) == 64

    async def test_draft_generation_writes_no_rows(self, db_session, sars_tables, practice, employee):
        result = await PayrollService(db_session).generate_payroll_run(practice.id, 3, 2024)

        assert await PayrollAuditService(db_session).list_for_run(result.run_id) == []

    async def test_reversal_row_negates_figures(self, db_session, sars_tables, practice, employee):
        run = await process_month(db_session, practice, 3)
        await PayrollService(db_session).reverse_payroll_run(run.id, reason="Overtime omitted")

        logs = await PayrollAuditService(db_session).list_for_employee(employee.id, TAX_YEAR)

        assert [log.event for log in logs] == [AuditEvent.CALCULATION, AuditEvent.REVERSAL]
        assert logs[1].reason == "Overtime omitted"
        assert logs[1].paye == Decimal("-4783.08")
        assert logs[1].net_salary == Decimal("-25039.80")
        assert logs[1].previous_hash == logs[0].content_hash


class TestHashChain:
    """Any edit or deletion breaks the chain."""

    async def test_chain_spans_months(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        await process_month(db_session, practice, 4)
        service = PayrollAuditService(db_session)

        logs = await service.list_for_employee(employee.id, TAX_YEAR)

        assert [log.sequence for log in logs] == [1, 2]
        assert logs[1].previous_hash == logs[0].content_hash
        assert await service.verify_chain(employee.id, TAX_YEAR) == 2

    async def test_chains_are_per_employee(self, db_session, sars_tables, practice, employee_factory):
        first = await employee_factory("EMP001")
        second = await employee_factory("EMP002", first_name="Pieter", last_name="Botha")
        await process_month(db_session, practice, 3)
        service = PayrollAuditService(db_session)

        assert await service.verify_chain(first.id, TAX_YEAR) == 1
        assert await service.verify_chain(second.id, TAX_YEAR) == 1

    async def test_edited_figure_detected(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        service = PayrollAuditService(db_session)
        [log] = await service.list_for_employee(employee.id, TAX_YEAR)
        log.paye = Decimal("1.00")
        await db_session.commit()

        with pytest.raises(ConsistencyError) as exc:
            await service.verify_chain(employee.id, TAX_YEAR)
        assert exc.value.code == ErrorCode.CHAIN_INTEGRITY_VIOLATED

    async def test_deleted_row_detected(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        await process_month(db_session, practice, 4)
        service = PayrollAuditService(db_session)
        first = (await service.list_for_employee(employee.id, TAX_YEAR))[0]
        await db_session.delete(first)
        await db_session.commit()

        with pytest.raises(ConsistencyError) as exc:
            await service.verify_chain(employee.id, TAX_YEAR)
        problems = {p["problem"] for p in exc.value.discrepancies}
        assert "previous hash does not match" in problems
