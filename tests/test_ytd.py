"""
Practice Payroll - YTD Ledger Tests

Ledger updates on processing and reversal, reconstruction and drift.
"""

from decimal import Decimal

import pytest

from practice_payroll.exceptions import ConsistencyError, ErrorCode
from practice_payroll.services.payroll_service import PayrollService
from practice_payroll.services.ytd_service import YTDService


pytestmark = pytest.mark.asyncio

TAX_YEAR = "2024/2025"


async def process_month(db_session, practice, month, year=2024):
    service = PayrollService(db_session)
    result = await service.generate_payroll_run(practice.id, month, year)
    await service.process_payroll_run(result.run_id)
    return result.run_id


class TestLedgerUpdates:

    async def test_processing_creates_ledger(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)

        ytd = await YTDService(db_session).get_ytd(employee.id, TAX_YEAR)

        assert ytd.periods_processed == 1
        assert ytd.ytd_gross == Decimal("30000.00")
        assert ytd.ytd_paye == Decimal("4783.08")
        assert ytd.ytd_uif_employee == Decimal("177.12")
        assert ytd.ytd_uif_employer == Decimal("177.12")
        assert ytd.ytd_sdl == Decimal("300.00")
        assert ytd.ytd_net == Decimal("25039.80")

    async def test_second_month_accumulates(self, db_session, sars_tables, practice, employee):
        """March 4,783.08 plus April 4,783.09."""
        await process_month(db_session, practice, 3)
        await process_month(db_session, practice, 4)

        ytd = await YTDService(db_session).get_ytd(employee.id, TAX_YEAR)

        assert ytd.periods_processed == 2
        assert ytd.ytd_paye == Decimal("9566.17")
        assert ytd.ytd_gross == Decimal("60000.00")

    async def test_draft_run_does_not_touch_ledger(self, db_session, sars_tables, practice, employee):
        service = YTDService(db_session)
        await process_month(db_session, practice, 3)
        await PayrollService(db_session).generate_payroll_run(practice.id, 4, 2024)

        ytd = await service.get_ytd(employee.id, TAX_YEAR)

        assert ytd.periods_processed == 1
        assert await service.check_drift(employee.id, TAX_YEAR) == []

    async def test_no_ledger_reads_as_zero(self, db_session, sars_tables, practice, employee):
        ytd = await YTDService(db_session).get_ytd(employee.id, TAX_YEAR)

        assert ytd.ytd_paye == Decimal("0.00")
        assert ytd.periods_processed == 0

    async def test_tax_years_kept_apart(self, db_session, sars_tables, practice, employee):
        """February 2025 closes 2024/2025; March 2025 opens 2025/2026."""
        await process_month(db_session, practice, 2, year=2025)
        await process_month(db_session, practice, 3, year=2025)
        service = YTDService(db_session)

        old_year = await service.get_ytd(employee.id, "2024/2025")
        new_year = await service.get_ytd(employee.id, "2025/2026")

        assert old_year.periods_processed == 1
        assert new_year.periods_processed == 1


class TestReconstruction:
    """The ledger is checked against finalized entries, never corrected."""

    async def test_reconstruct_matches_ledger(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        await process_month(db_session, practice, 4)
        service = YTDService(db_session)

        reconstructed = await service.reconstruct(employee.id, TAX_YEAR)

        assert reconstructed == await service.get_ytd(employee.id, TAX_YEAR)
        await service.assert_consistent(employee.id, TAX_YEAR)

    async def test_figures_through_month(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        await process_month(db_session, practice, 4)

        march = await YTDService(db_session).figures_through(employee.id, TAX_YEAR, 2024, 3)

        assert march.periods_processed == 1
        assert march.ytd_paye == Decimal("4783.08")

    async def test_reversal_keeps_ledger_consistent(self, db_session, sars_tables, practice, employee):
        run_id = await process_month(db_session, practice, 3)
        await PayrollService(db_session).reverse_payroll_run(run_id, reason="Incorrect salary")
        service = YTDService(db_session)

        assert await service.check_drift(employee.id, TAX_YEAR) == []
        assert (await service.get_ledger(employee.id, TAX_YEAR)).ytd_paye == Decimal("0.00")

    async def test_tampered_ledger_detected(self, db_session, sars_tables, practice, employee):
        await process_month(db_session, practice, 3)
        service = YTDService(db_session)
        ledger = await service.get_ledger(employee.id, TAX_YEAR)
        ledger.ytd_paye = Decimal("4784.08")
        await db_session.commit()

        discrepancies = await service.check_drift(employee.id, TAX_YEAR)

        assert [d.field for d in discrepancies] == ["ytd_paye"]
        assert discrepancies[0].difference == Decimal("1.00")
        assert len(await service.check_practice_drift(practice.id, TAX_YEAR)) == 1

        with pytest.raises(ConsistencyError) as exc:
            await service.assert_consistent(employee.id, TAX_YEAR)
        assert exc.value.code == ErrorCode.YTD_DRIFT

        # Reported, not corrected
        assert (await service.get_ledger(employee.id, TAX_YEAR)).ytd_paye == Decimal("4784.08")
