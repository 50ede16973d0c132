"""
Practice Payroll - Tax Calculator Tests

Unit tests for PAYE under the SARS tax tables.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from practice_payroll.exceptions import ConfigurationError, ErrorCode, PayrollValidationError
from practice_payroll.services.tax_calculators import (
    PAYECalculator,
    TaxBracketBand,
    TaxTable,
    TaxTableService,
    age_at_tax_year_end,
    calendar_month_for_period,
    compute_annual_paye,
    monthly_paye,
    period_number,
    tax_year_bounds,
    tax_year_label_for,
)
from practice_payroll.services.tax_calculators.sars_tables import SARS_TAX_YEARS, seed_sars_tables


def simple_table(**overrides) -> TaxTable:
    """Two-band table: 10% to R100,000, 20% above, no rebates."""
    values = dict(
        tax_year="2030/2031",
        start_date=date(2030, 3, 1),
        end_date=date(2031, 2, 28),
        brackets=(
            TaxBracketBand(lower=Decimal("0"), upper=Decimal("100000"), rate=Decimal("0.10")),
            TaxBracketBand(lower=Decimal("100000"), upper=None, rate=Decimal("0.20")),
        ),
        primary_rebate=Decimal("0"),
        secondary_rebate=Decimal("0"),
        tertiary_rebate=Decimal("0"),
        threshold_under_65=Decimal("0"),
        threshold_65_to_74=Decimal("0"),
        threshold_75_and_over=Decimal("0"),
    )
    values.update(overrides)
    return TaxTable(**values)


class TestTaxYearHelpers:
    """Tax year labels and periods; the tax year starts in March."""

    def test_march_starts_new_tax_year(self):
        """March 2024 belongs to 2024/2025."""
        assert tax_year_label_for(2024, 3) == "2024/2025"

    def test_february_belongs_to_previous_tax_year(self):
        """February 2025 is the last month of 2024/2025."""
        assert tax_year_label_for(2025, 2) == "2024/2025"

    def test_invalid_month_rejected(self):
        with pytest.raises(PayrollValidationError) as exc:
            tax_year_label_for(2024, 13)
        assert exc.value.code == ErrorCode.INVALID_TAX_PERIOD

    def test_period_numbers(self):
        """March is period 1 and February period 12."""
        assert period_number(3) == 1
        assert period_number(12) == 10
        assert period_number(1) == 11
        assert period_number(2) == 12

    def test_tax_year_bounds_handle_leap_year(self):
        """2023/2024 ends on 29 February 2024."""
        assert tax_year_bounds("2023/2024") == (date(2023, 3, 1), date(2024, 2, 29))
        assert tax_year_bounds("2024/2025") == (date(2024, 3, 1), date(2025, 2, 28))

    def test_malformed_label_rejected(self):
        with pytest.raises(ConfigurationError):
            tax_year_bounds("2024/2026")

    def test_calendar_month_for_period(self):
        assert calendar_month_for_period("2024/2025", 1) == (2024, 3)
        assert calendar_month_for_period("2024/2025", 10) == (2024, 12)
        assert calendar_month_for_period("2024/2025", 11) == (2025, 1)


class TestAnnualPAYE:
    """Annual PAYE for 2024/2025."""

    def test_annual_paye_360k_under_65(self, table_2024):
        """R360,000: 42,678 + 26% of 122,900 = 74,632 less primary rebate 17,235."""
        assert compute_annual_paye(Decimal("360000"), table_2024, age=39) == Decimal("57397.00")

    def test_income_below_threshold_is_tax_free(self, table_2024):
        """R84,000 is below the R95,750 threshold."""
        assert compute_annual_paye(Decimal("84000"), table_2024, age=30) == Decimal("0.00")

    def test_income_at_threshold_is_tax_free(self, table_2024):
        assert compute_annual_paye(Decimal("95750"), table_2024, age=30) == Decimal("0.00")

    def test_secondary_rebate_from_65(self, table_2024):
        """R200,000 at 70: 36,000 less 17,235 and 9,444."""
        assert compute_annual_paye(Decimal("200000"), table_2024, age=70) == Decimal("9321.00")

    def test_tertiary_rebate_from_75(self, table_2024):
        """R200,000 at 76: all three rebates apply."""
        assert compute_annual_paye(Decimal("200000"), table_2024, age=76) == Decimal("6176.00")

    def test_unknown_age_gets_primary_rebate_only(self, table_2024):
        assert compute_annual_paye(Decimal("200000"), table_2024, age=None) == Decimal("18765.00")

    def test_negative_income_gives_zero(self, table_2024):
        assert compute_annual_paye(Decimal("-5000"), table_2024) == Decimal("0.00")

    def test_top_bracket(self, table_2024):
        """R2,000,000: 644,489 + 45% of 183,000 less 17,235."""
        expected = Decimal("644489") + Decimal("183000") * Decimal("0.45") - Decimal("17235")
        assert compute_annual_paye(Decimal("2000000"), table_2024, age=40) == expected.quantize(Decimal("0.01"))

    @pytest.mark.parametrize("age", [None, 39, 66, 80])
    def test_paye_never_negative_and_never_falls_as_income_rises(self, table_2024, age):
        """Swept across every band, including a cent either side of each boundary."""
        incomes = {Decimal(amount) for amount in range(0, 2_500_001, 7_919)}
        for band in table_2024.brackets:
            incomes.update({band.lower - Decimal("0.01"), band.lower, band.lower + Decimal("0.01")})
        incomes = sorted(income for income in incomes if income >= 0)

        taxes = [compute_annual_paye(income, table_2024, age=age) for income in incomes]

        assert all(tax >= 0 for tax in taxes)
        assert all(later >= earlier for earlier, later in zip(taxes, taxes[1:]))

    def test_age_determined_at_tax_year_end(self, table_2024):
        """Age is taken on 28 February 2025, the last day of the tax year."""
        assert age_at_tax_year_end(date(1960, 2, 28), table_2024) == 65
        assert age_at_tax_year_end(date(1960, 3, 1), table_2024) == 64
        assert age_at_tax_year_end(None, table_2024) is None

    def test_breakdown_records_intermediate_values(self, table_2024):
        """Every intermediate value is available for the audit log."""
        result = PAYECalculator(table_2024).calculate_annual_paye(Decimal("360000"), age=39)

        assert result["bracket_tax"] == Decimal("74632.00")
        assert result["total_rebates"] == Decimal("17235.00")
        assert result["tax_threshold"] == Decimal("95750")
        assert len(result["band_breakdown"]) == 2
        assert result["band_breakdown"][1]["tax"] == Decimal("31954.00")


class TestMonthlyApportionment:
    """Cumulative round-half-up apportionment of the annual figure."""

    def test_first_period_is_rounded_twelfth(self):
        """57,397 / 12 = 4,783.0833 -> 4,783.08."""
        assert monthly_paye(Decimal("57397.00"), 1) == Decimal("4783.08")

    def test_second_period_carries_rounding(self):
        """Cumulative 9,566.17 less 4,783.08."""
        assert monthly_paye(Decimal("57397.00"), 2) == Decimal("4783.09")

    def test_twelve_periods_sum_to_annual(self):
        total = sum(monthly_paye(Decimal("57397.00"), p) for p in range(1, 13))
        assert total == Decimal("57397.00")

    def test_invalid_period_rejected(self):
        with pytest.raises(PayrollValidationError):
            monthly_paye(Decimal("1000"), 13)


class TestMedicalCreditsAndIrregularPayments:
    """Medical scheme fees tax credits and bonus tax."""

    def test_medical_credit_non_member(self, table_2024):
        assert PAYECalculator(table_2024).monthly_medical_credit(False, 3) == Decimal("0.00")

    def test_medical_credit_main_member_only(self, table_2024):
        assert PAYECalculator(table_2024).monthly_medical_credit(True) == Decimal("364.00")

    def test_medical_credit_with_dependants(self, table_2024):
        """364 + 364 + 246 for a member with two dependants."""
        assert PAYECalculator(table_2024).monthly_medical_credit(True, 2) == Decimal("974.00")

    def test_bonus_taxed_on_annual_difference(self, table_2024):
        """R10,000 bonus on R360,000: annual PAYE rises from 57,397 to 59,997."""
        tax = PAYECalculator(table_2024).irregular_payment_paye(Decimal("360000"), Decimal("10000"), age=39)
        assert tax == Decimal("2600.00")

    def test_no_irregular_payment_no_tax(self, table_2024):
        assert PAYECalculator(table_2024).irregular_payment_paye(Decimal("360000"), Decimal("0")) == Decimal("0.00")


class TestTaxTableValidation:
    """Bracket tables are validated on construction."""

    def test_custom_table_is_used(self):
        """R360,000 on the custom table: 10,000 + 20% of 260,000."""
        assert compute_annual_paye(Decimal("360000"), simple_table()) == Decimal("62000.00")
        assert monthly_paye(Decimal("62000.00"), 1) == Decimal("5166.67")

    def test_gap_between_brackets_rejected(self):
        with pytest.raises(ConfigurationError):
            simple_table(brackets=(
                TaxBracketBand(lower=Decimal("0"), upper=Decimal("100000"), rate=Decimal("0.10")),
                TaxBracketBand(lower=Decimal("120000"), upper=None, rate=Decimal("0.20")),
            ))

    def test_closed_top_bracket_rejected(self):
        with pytest.raises(ConfigurationError):
            simple_table(brackets=(
                TaxBracketBand(lower=Decimal("0"), upper=Decimal("100000"), rate=Decimal("0.10")),
            ))

    def test_empty_table_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            simple_table(brackets=())
        assert exc.value.code == ErrorCode.MISSING_RATE_TABLE

    def test_wrong_published_base_tax_rejected(self):
        """Base tax on the second band must equal 10% of 100,000."""
        with pytest.raises(ConfigurationError):
            simple_table(brackets=(
                TaxBracketBand(lower=Decimal("0"), upper=Decimal("100000"), rate=Decimal("0.10")),
                TaxBracketBand(lower=Decimal("100000"), upper=None, rate=Decimal("0.20"), base_tax=Decimal("9000")),
            ))

    def test_version_is_stable_and_content_based(self, table_2024):
        assert table_2024.version == replace(table_2024).version
        assert table_2024.version != simple_table().version


@pytest.mark.asyncio
class TestTaxTableService:
    """Published tax tables in the database."""

    async def test_seeded_table_matches_published_figures(self, db_session, sars_tables):
        """Seeding creates both tax years and the loaded table computes the same PAYE."""
        assert sars_tables == list(SARS_TAX_YEARS)

        table = await TaxTableService(db_session).get_table("2024/2025")

        assert compute_annual_paye(Decimal("360000"), table, age=39) == Decimal("57397.00")
        assert table.start_date == date(2024, 3, 1)

    async def test_seeding_twice_creates_nothing(self, db_session, sars_tables):
        assert await seed_sars_tables(db_session) == []

    async def test_unknown_tax_year(self, db_session, sars_tables):
        with pytest.raises(ConfigurationError) as exc:
            await TaxTableService(db_session).get_table("2030/2031")
        assert exc.value.code == ErrorCode.UNKNOWN_TAX_YEAR

    async def test_unpublished_tax_year_not_usable(self, db_session):
        service = TaxTableService(db_session)
        await service.create_tax_year("2030/2031", **SARS_TAX_YEARS["2024/2025"])

        with pytest.raises(ConfigurationError) as exc:
            await service.get_table("2030/2031")
        assert exc.value.code == ErrorCode.TAX_YEAR_NOT_PUBLISHED

        tax_year = await service.publish_tax_year("2030/2031")
        assert tax_year.version == (await service.get_table("2030/2031")).version

    async def test_existing_tax_year_cannot_be_overwritten(self, db_session, sars_tables):
        with pytest.raises(ConfigurationError) as exc:
            await TaxTableService(db_session).create_tax_year(
                "2024/2025", **SARS_TAX_YEARS["2024/2025"]
            )
        assert exc.value.code == ErrorCode.TAX_YEAR_IMMUTABLE

    async def test_published_tax_year_cannot_be_published_again(self, db_session, sars_tables):
        with pytest.raises(ConfigurationError) as exc:
            await TaxTableService(db_session).publish_tax_year("2024/2025")
        assert exc.value.code == ErrorCode.TAX_YEAR_IMMUTABLE

    async def test_edited_published_table_detected(self, db_session, sars_tables):
        """A published table whose content changed no longer matches its version."""
        service = TaxTableService(db_session)
        tax_year = (await service.list_tax_years())[0]
        tax_year.primary_rebate = Decimal("18000")

        with pytest.raises(ConfigurationError) as exc:
            await service.get_table(tax_year.label)
        assert exc.value.code == ErrorCode.TAX_YEAR_IMMUTABLE

    async def test_table_for_period(self, db_session, sars_tables):
        """February 2025 uses the 2024/2025 table."""
        table = await TaxTableService(db_session).get_table_for_period(2, 2025)

        assert table.tax_year == "2024/2025"

    async def test_unpublished_tax_year_can_be_corrected(self, db_session):
        service = TaxTableService(db_session)
        await service.create_tax_year("2030/2031", **SARS_TAX_YEARS["2024/2025"])

        await service.update_tax_year("2030/2031", primary_rebate=Decimal("18000"))
        await service.publish_tax_year("2030/2031")

        table = await service.get_table("2030/2031")
        assert table.primary_rebate == Decimal("18000")

    async def test_published_tax_year_cannot_be_corrected(self, db_session, sars_tables):
        with pytest.raises(ConfigurationError) as exc:
            await TaxTableService(db_session).update_tax_year("2024/2025", primary_rebate=Decimal("18000"))
        assert exc.value.code == ErrorCode.TAX_YEAR_IMMUTABLE

    async def test_brackets_cannot_be_changed_through_update(self, db_session):
        service = TaxTableService(db_session)
        await service.create_tax_year("2030/2031", **SARS_TAX_YEARS["2024/2025"])

        with pytest.raises(ConfigurationError):
            await service.update_tax_year("2030/2031", brackets=Decimal("0"))
