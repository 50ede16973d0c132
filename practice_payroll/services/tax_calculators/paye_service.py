"""
Practice Payroll - PAYE Calculator Service

PAYE (Pay As You Earn) under the SARS tax tables.

Annual tax on taxable income is the progressive bracket tax less the
age-dependent rebates:
- Primary rebate: every taxpayer
- Secondary rebate: 65 and older
- Tertiary rebate: 75 and older

Income at or below the age-banded tax threshold carries no PAYE.
Age is determined once per tax year, on the last day of the tax year.

Monthly PAYE is apportioned from the annual figure with cumulative
round-half-up: period n withholds round(annual * n / 12) less
round(annual * (n - 1) / 12). Period 1 (March) therefore equals
round_half_up(annual / 12), and twelve periods sum exactly to the
annual liability.

Everything except TaxTableService is pure: a TaxTable is passed in
explicitly and the current date is never consulted.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.exceptions import (
    ConfigurationError,
    ErrorCode,
    PayrollValidationError,
)
from practice_payroll.models.tax import TaxBracket, TaxYear
from practice_payroll.utils.money import ZERO, content_hash, round_cents, to_decimal

logger = logging.getLogger(__name__)

MONTHS_PER_YEAR = 12
TAX_YEAR_START_MONTH = 3
SECONDARY_REBATE_AGE = 65
TERTIARY_REBATE_AGE = 75


# ===========================================
# TAX YEAR HELPERS
# ===========================================

def tax_year_label_for(year: int, month: int) -> str:
    """
    Label of the tax year containing a calendar month.
    
    March 2024 to February 2025 is "2024/2025".
    """
    if not 1 <= month <= 12:
        raise PayrollValidationError(
            f"Invalid month: {month}", field="month", code=ErrorCode.INVALID_TAX_PERIOD,
        )
    start_year = year if month >= TAX_YEAR_START_MONTH else year - 1
    return f"{start_year}/{start_year + 1}"


def tax_year_bounds(label: str) -> Tuple[date, date]:
    """First and last day of a tax year label."""
    try:
        start_year, end_year = (int(part) for part in label.split("/"))
    except ValueError:
        raise ConfigurationError(
            f"Malformed tax year label: {label}", code=ErrorCode.UNKNOWN_TAX_YEAR,
        )
    if end_year != start_year + 1:
        raise ConfigurationError(
            f"Malformed tax year label: {label}", code=ErrorCode.UNKNOWN_TAX_YEAR,
        )
    # Last day of February handles leap years
    end = date(end_year, 3, 1).toordinal() - 1
    return date(start_year, 3, 1), date.fromordinal(end)


def period_number(month: int) -> int:
    """Position of a calendar month in the tax year: March is 1, February is 12."""
    if not 1 <= month <= 12:
        raise PayrollValidationError(
            f"Invalid month: {month}", field="month", code=ErrorCode.INVALID_TAX_PERIOD,
        )
    return (month - TAX_YEAR_START_MONTH) % MONTHS_PER_YEAR + 1


def calendar_month_for_period(label: str, number: int) -> Tuple[int, int]:
    """(year, month) of tax period `number` in the tax year `label`."""
    start, _ = tax_year_bounds(label)
    month_index = TAX_YEAR_START_MONTH - 1 + number - 1
    return start.year + month_index // MONTHS_PER_YEAR, month_index % MONTHS_PER_YEAR + 1


def age_on(date_of_birth: date, on_date: date) -> int:
    years = on_date.year - date_of_birth.year
    if (on_date.month, on_date.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


# ===========================================
# TAX TABLE
# ===========================================

@dataclass(frozen=True)
class TaxBracketBand:
    """Marginal tax band; upper is None for the top band."""
    lower: Decimal
    upper: Optional[Decimal]
    rate: Decimal
    base_tax: Optional[Decimal] = None
    
    def calculate_tax(self, taxable_income: Decimal) -> Decimal:
        """Tax on the part of the income that falls inside this band."""
        if taxable_income <= self.lower:
            return Decimal("0")
        
        if self.upper is None:
            taxable_in_band = taxable_income - self.lower
        else:
            taxable_in_band = min(taxable_income, self.upper) - self.lower
        
        return taxable_in_band * self.rate


@dataclass(frozen=True)
class TaxTable:
    """
    Immutable SARS tax table for one tax year.
    
    Built from a published TaxYear row (see TaxTableService) or directly
    in code. Construction validates the bracket structure.
    """
    tax_year: str
    start_date: date
    end_date: date
    brackets: Tuple[TaxBracketBand, ...]
    primary_rebate: Decimal
    secondary_rebate: Decimal
    tertiary_rebate: Decimal
    threshold_under_65: Decimal
    threshold_65_to_74: Decimal
    threshold_75_and_over: Decimal
    medical_credit_main: Decimal = Decimal("0")
    medical_credit_first_dependant: Decimal = Decimal("0")
    medical_credit_additional: Decimal = Decimal("0")
    
    def __post_init__(self):
        object.__setattr__(self, "brackets", tuple(self.brackets))
        self._validate()
    
    def _validate(self) -> None:
        if not self.brackets:
            raise ConfigurationError(
                f"Tax year {self.tax_year} has no brackets", code=ErrorCode.MISSING_RATE_TABLE,
            )
        if self.brackets[0].lower != 0:
            raise ConfigurationError(f"Tax year {self.tax_year}: first bracket must start at 0")
        
        computed_base = Decimal("0")
        for index, band in enumerate(self.brackets):
            is_last = index == len(self.brackets) - 1
            if not Decimal("0") <= band.rate < Decimal("1"):
                raise ConfigurationError(f"Tax year {self.tax_year}: rate {band.rate} out of range")
            if is_last:
                if band.upper is not None:
                    raise ConfigurationError(f"Tax year {self.tax_year}: top bracket must be open-ended")
            else:
                following = self.brackets[index + 1]
                if band.upper is None or band.upper <= band.lower:
                    raise ConfigurationError(f"Tax year {self.tax_year}: brackets must strictly increase")
                if following.lower != band.upper:
                    raise ConfigurationError(f"Tax year {self.tax_year}: brackets must be contiguous")
            
            if band.base_tax is not None and round_cents(band.base_tax) != round_cents(computed_base):
                raise ConfigurationError(
                    f"Tax year {self.tax_year}: published base tax {band.base_tax} "
                    f"on {band.lower} does not match the bracket rates ({round_cents(computed_base)})"
                )
            if band.upper is not None:
                computed_base += (band.upper - band.lower) * band.rate
    
    @property
    def version(self) -> str:
        """SHA-256 of the table content; identifies the exact table used."""
        return content_hash(self.to_dict())
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_year": self.tax_year,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "brackets": [
                {"lower": b.lower, "upper": b.upper, "rate": b.rate}
                for b in self.brackets
            ],
            "rebates": {
                "primary": self.primary_rebate,
                "secondary": self.secondary_rebate,
                "tertiary": self.tertiary_rebate,
            },
            "thresholds": {
                "under_65": self.threshold_under_65,
                "65_to_74": self.threshold_65_to_74,
                "75_and_over": self.threshold_75_and_over,
            },
            "medical_credits": {
                "main": self.medical_credit_main,
                "first_dependant": self.medical_credit_first_dependant,
                "additional": self.medical_credit_additional,
            },
        }
    
    @classmethod
    def from_model(cls, tax_year: TaxYear) -> "TaxTable":
        return cls(
            tax_year=tax_year.label,
            start_date=tax_year.start_date,
            end_date=tax_year.end_date,
            brackets=tuple(
                TaxBracketBand(
                    lower=to_decimal(b.lower_bound),
                    upper=to_decimal(b.upper_bound) if b.upper_bound is not None else None,
                    rate=to_decimal(b.rate),
                    base_tax=to_decimal(b.base_tax) if b.base_tax is not None else None,
                )
                for b in sorted(tax_year.brackets, key=lambda b: b.lower_bound)
            ),
            primary_rebate=to_decimal(tax_year.primary_rebate),
            secondary_rebate=to_decimal(tax_year.secondary_rebate),
            tertiary_rebate=to_decimal(tax_year.tertiary_rebate),
            threshold_under_65=to_decimal(tax_year.threshold_under_65),
            threshold_65_to_74=to_decimal(tax_year.threshold_65_to_74),
            threshold_75_and_over=to_decimal(tax_year.threshold_75_and_over),
            medical_credit_main=to_decimal(tax_year.medical_credit_main),
            medical_credit_first_dependant=to_decimal(tax_year.medical_credit_first_dependant),
            medical_credit_additional=to_decimal(tax_year.medical_credit_additional),
        )


# ===========================================
# CALCULATOR
# ===========================================

class PAYECalculator:
    """
    PAYE calculator bound to one TaxTable.
    
    Every method is a pure function of its arguments and the table.
    """
    
    def __init__(self, table: TaxTable):
        self.table = table
    
    def age_at_year_end(self, date_of_birth: Optional[date]) -> Optional[int]:
        """Age used for rebates and thresholds throughout the tax year."""
        if date_of_birth is None:
            return None
        return age_on(date_of_birth, self.table.end_date)
    
    def calculate_bracket_tax(
        self,
        annual_taxable_income: Decimal,
    ) -> Tuple[Decimal, List[Dict[str, Any]]]:
        """
        Progressive tax before rebates.
        
        Returns:
            Tuple of (total_tax, band_breakdown)
        """
        total_tax = Decimal("0")
        band_breakdown = []
        
        for band in self.table.brackets:
            band_tax = band.calculate_tax(annual_taxable_income)
            if band_tax > 0:
                band_breakdown.append({
                    "lower": band.lower,
                    "upper": band.upper,
                    "rate": band.rate,
                    "tax": round_cents(band_tax),
                })
            total_tax += band_tax
        
        return total_tax, band_breakdown
    
    def rebates_for_age(self, age: Optional[int]) -> Dict[str, Decimal]:
        """Rebates the taxpayer qualifies for; unknown age gets the primary rebate only."""
        rebates = {"primary": self.table.primary_rebate}
        if age is not None and age >= SECONDARY_REBATE_AGE:
            rebates["secondary"] = self.table.secondary_rebate
        if age is not None and age >= TERTIARY_REBATE_AGE:
            rebates["tertiary"] = self.table.tertiary_rebate
        return rebates
    
    def threshold_for_age(self, age: Optional[int]) -> Decimal:
        if age is not None and age >= TERTIARY_REBATE_AGE:
            return self.table.threshold_75_and_over
        if age is not None and age >= SECONDARY_REBATE_AGE:
            return self.table.threshold_65_to_74
        return self.table.threshold_under_65
    
    def calculate_annual_paye(
        self,
        annual_taxable_income: Decimal,
        age: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Annual PAYE with every intermediate value.
        
        Returns a dict suitable for the payroll audit log.
        """
        income = round_cents(max(to_decimal(annual_taxable_income), ZERO))
        threshold = self.threshold_for_age(age)
        bracket_tax, band_breakdown = self.calculate_bracket_tax(income)
        rebates = self.rebates_for_age(age)
        total_rebates = sum(rebates.values(), Decimal("0"))
        
        if income <= threshold:
            annual_paye = ZERO
        else:
            annual_paye = round_cents(max(bracket_tax - total_rebates, Decimal("0")))
        
        return {
            "annual_taxable_income": income,
            "age": age,
            "tax_threshold": threshold,
            "below_threshold": income <= threshold,
            "bracket_tax": round_cents(bracket_tax),
            "band_breakdown": band_breakdown,
            "rebates": rebates,
            "total_rebates": round_cents(total_rebates),
            "annual_paye": annual_paye,
        }
    
    def annual_paye(self, annual_taxable_income: Decimal, age: Optional[int] = None) -> Decimal:
        return self.calculate_annual_paye(annual_taxable_income, age)["annual_paye"]
    
    def monthly_medical_credit(self, is_member: bool, dependants: int = 0) -> Decimal:
        """
        Medical scheme fees tax credit for one month.
        
        Main member, first dependant, then a lower credit per additional dependant.
        """
        if not is_member:
            return ZERO
        credit = self.table.medical_credit_main
        if dependants >= 1:
            credit += self.table.medical_credit_first_dependant
        if dependants > 1:
            credit += self.table.medical_credit_additional * (dependants - 1)
        return round_cents(credit)
    
    def irregular_payment_paye(
        self,
        annual_regular_income: Decimal,
        irregular_amount: Decimal,
        age: Optional[int] = None,
    ) -> Decimal:
        """
        PAYE on a bonus or other irregular payment.
        
        The payment is added once to the annual regular income and the whole
        difference in annual tax is withheld in the month it is paid.
        """
        if irregular_amount <= 0:
            return ZERO
        with_payment = self.annual_paye(annual_regular_income + irregular_amount, age)
        without_payment = self.annual_paye(annual_regular_income, age)
        return round_cents(with_payment - without_payment)


# ===========================================
# MODULE-LEVEL FUNCTIONS
# ===========================================

def compute_annual_paye(
    annual_taxable_income: Decimal,
    table: TaxTable,
    age: Optional[int] = None,
) -> Decimal:
    """
    Annual PAYE liability for a tax year.
    
    Args:
        annual_taxable_income: Annual taxable income
        table: Tax table of the tax year
        age: Age at the end of the tax year, or None when unknown
    
    Returns:
        Annual PAYE, never negative
    """
    return PAYECalculator(table).annual_paye(annual_taxable_income, age)


def monthly_paye(annual_paye: Decimal, period: int = 1) -> Decimal:
    """Share of the annual PAYE withheld in tax period `period` (1-12)."""
    if not 1 <= period <= MONTHS_PER_YEAR:
        raise PayrollValidationError(
            f"Invalid tax period: {period}", field="period", code=ErrorCode.INVALID_TAX_PERIOD,
        )
    annual = to_decimal(annual_paye)
    cumulative = round_cents(annual * period / MONTHS_PER_YEAR)
    previous = round_cents(annual * (period - 1) / MONTHS_PER_YEAR)
    return cumulative - previous


def age_at_tax_year_end(date_of_birth: Optional[date], table: TaxTable) -> Optional[int]:
    return PAYECalculator(table).age_at_year_end(date_of_birth)


# ===========================================
# TAX TABLE SERVICE
# ===========================================

EDITABLE_TAX_YEAR_FIELDS = (
    "primary_rebate",
    "secondary_rebate",
    "tertiary_rebate",
    "threshold_under_65",
    "threshold_65_to_74",
    "threshold_75_and_over",
    "medical_credit_main",
    "medical_credit_first_dependant",
    "medical_credit_additional",
)


class TaxTableService:
    """Loads published tax tables and manages their publication."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def _get_tax_year(self, label: str) -> Optional[TaxYear]:
        result = await self.db.execute(
            select(TaxYear).where(TaxYear.label == label)
        )
        return result.scalar_one_or_none()
    
    async def get_table(self, label: str) -> TaxTable:
        """
        Published tax table for a tax year.
        
        Raises:
            ConfigurationError: unknown, unpublished or incomplete tax year
        """
        tax_year = await self._get_tax_year(label)
        if tax_year is None:
            raise ConfigurationError(
                f"Unknown tax year: {label}", code=ErrorCode.UNKNOWN_TAX_YEAR,
            )
        if not tax_year.is_published:
            raise ConfigurationError(
                f"Tax year {label} is not published", code=ErrorCode.TAX_YEAR_NOT_PUBLISHED,
            )
        table = TaxTable.from_model(tax_year)
        if tax_year.version and tax_year.version != table.version:
            raise ConfigurationError(
                f"Tax year {label} content changed after publication",
                code=ErrorCode.TAX_YEAR_IMMUTABLE,
                details={"published_version": tax_year.version, "current_version": table.version},
            )
        return table
    
    async def get_table_for_period(self, month: int, year: int) -> TaxTable:
        return await self.get_table(tax_year_label_for(year, month))
    
    async def list_tax_years(self, published_only: bool = False) -> List[TaxYear]:
        query = select(TaxYear).order_by(TaxYear.start_date)
        if published_only:
            query = query.where(TaxYear.is_published == True)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def create_tax_year(
        self,
        label: str,
        brackets: Sequence[Tuple[Decimal, Optional[Decimal], Decimal, Optional[Decimal]]],
        primary_rebate: Decimal,
        secondary_rebate: Decimal,
        tertiary_rebate: Decimal,
        threshold_under_65: Decimal,
        threshold_65_to_74: Decimal,
        threshold_75_and_over: Decimal,
        medical_credit_main: Decimal = Decimal("0"),
        medical_credit_first_dependant: Decimal = Decimal("0"),
        medical_credit_additional: Decimal = Decimal("0"),
        description: Optional[str] = None,
        publish: bool = False,
    ) -> TaxYear:
        """
        Create a new tax year from (lower, upper, rate, base_tax) brackets.
        
        An existing tax year is never overwritten.
        """
        if await self._get_tax_year(label) is not None:
            raise ConfigurationError(
                f"Tax year {label} already exists and cannot be overwritten",
                code=ErrorCode.TAX_YEAR_IMMUTABLE,
            )
        start_date, end_date = tax_year_bounds(label)
        
        tax_year = TaxYear(
            label=label,
            start_date=start_date,
            end_date=end_date,
            description=description,
            primary_rebate=to_decimal(primary_rebate),
            secondary_rebate=to_decimal(secondary_rebate),
            tertiary_rebate=to_decimal(tertiary_rebate),
            threshold_under_65=to_decimal(threshold_under_65),
            threshold_65_to_74=to_decimal(threshold_65_to_74),
            threshold_75_and_over=to_decimal(threshold_75_and_over),
            medical_credit_main=to_decimal(medical_credit_main),
            medical_credit_first_dependant=to_decimal(medical_credit_first_dependant),
            medical_credit_additional=to_decimal(medical_credit_additional),
            brackets=[
                TaxBracket(
                    lower_bound=to_decimal(lower),
                    upper_bound=to_decimal(upper) if upper is not None else None,
                    rate=to_decimal(rate),
                    base_tax=to_decimal(base_tax) if base_tax is not None else None,
                )
                for lower, upper, rate, base_tax in brackets
            ],
        )
        # Fails fast on a malformed table
        TaxTable.from_model(tax_year)
        
        self.db.add(tax_year)
        await self.db.flush()
        
        if publish:
            await self.publish_tax_year(label)
        
        logger.info(f"Created tax year {label} with {len(brackets)} brackets")
        return tax_year
    
    async def publish_tax_year(self, label: str) -> TaxYear:
        """Publish a tax year, stamping the version hash of its table."""
        tax_year = await self._get_tax_year(label)
        if tax_year is None:
            raise ConfigurationError(f"Unknown tax year: {label}", code=ErrorCode.UNKNOWN_TAX_YEAR)
        if tax_year.is_published:
            raise ConfigurationError(
                f"Tax year {label} is already published", code=ErrorCode.TAX_YEAR_IMMUTABLE,
            )
        
        table = TaxTable.from_model(tax_year)
        tax_year.is_published = True
        tax_year.published_at = datetime.now(timezone.utc)
        tax_year.version = table.version
        await self.db.flush()
        
        logger.info(f"Published tax year {label} (version {table.version[:12]})")
        return tax_year
    
    async def update_tax_year(self, label: str, **changes: Decimal) -> TaxYear:
        """Correct rebates, thresholds or medical credits before publication."""
        tax_year = await self._get_tax_year(label)
        if tax_year is None:
            raise ConfigurationError(f"Unknown tax year: {label}", code=ErrorCode.UNKNOWN_TAX_YEAR)
        self.ensure_mutable(tax_year)
        
        for name, value in changes.items():
            if name not in EDITABLE_TAX_YEAR_FIELDS:
                raise ConfigurationError(f"Tax year field {name} cannot be changed")
            setattr(tax_year, name, to_decimal(value))
        TaxTable.from_model(tax_year)
        await self.db.flush()
        
        logger.info(f"Updated unpublished tax year {label}: {', '.join(sorted(changes))}")
        return tax_year
    
    def ensure_mutable(self, tax_year: TaxYear) -> None:
        """Refuse edits to a published tax year."""
        if tax_year.is_published:
            raise ConfigurationError(
                f"Tax year {tax_year.label} is published and immutable",
                code=ErrorCode.TAX_YEAR_IMMUTABLE,
            )
