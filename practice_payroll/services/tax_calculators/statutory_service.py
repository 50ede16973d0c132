"""
Practice Payroll - Statutory Contribution Calculator

UIF (Unemployment Insurance Fund):
- Employee contribution: rate x remuneration, capped per month
- Employer contribution: matches the employee contribution
- Both are zero for UIF-exempt employees

SDL (Skills Development Levy):
- Employer only: rate x remuneration, no cap
- Zero for SDL-exempt employers; never an employee deduction

Rates and caps are database configuration bound to an effective date
range (StatutoryRate), so a rate change needs no code change.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.exceptions import ConfigurationError, ErrorCode, PayrollValidationError
from practice_payroll.models.tax import StatutoryRate
from practice_payroll.utils.money import ZERO, round_cents, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatutoryRates:
    """UIF and SDL parameters in force for a period."""
    uif_rate: Decimal
    uif_monthly_cap: Decimal
    sdl_rate: Decimal
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    
    @classmethod
    def from_model(cls, rate: StatutoryRate) -> "StatutoryRates":
        return cls(
            uif_rate=to_decimal(rate.uif_rate),
            uif_monthly_cap=to_decimal(rate.uif_monthly_cap),
            sdl_rate=to_decimal(rate.sdl_rate),
            effective_from=rate.effective_from,
            effective_to=rate.effective_to,
        )
    
    def to_dict(self) -> dict:
        return {
            "uif_rate": self.uif_rate,
            "uif_monthly_cap": self.uif_monthly_cap,
            "sdl_rate": self.sdl_rate,
            "effective_from": self.effective_from,
            "effective_to": self.effective_to,
        }


@dataclass(frozen=True)
class UIFResult:
    employee: Decimal
    employer: Decimal
    
    @property
    def total(self) -> Decimal:
        return self.employee + self.employer


def compute_uif(gross_monthly: Decimal, is_exempt: bool, rates: StatutoryRates) -> UIFResult:
    """
    Monthly UIF contributions.
    
    Args:
        gross_monthly: Monthly remuneration (salary plus irregular payments)
        is_exempt: Employee is exempt from UIF
        rates: Rates in force for the period
    
    Returns:
        UIFResult with matching employee and employer contributions
    """
    if is_exempt or gross_monthly <= 0:
        return UIFResult(employee=ZERO, employer=ZERO)
    contribution = min(round_cents(to_decimal(gross_monthly) * rates.uif_rate), rates.uif_monthly_cap)
    contribution = round_cents(contribution)
    return UIFResult(employee=contribution, employer=contribution)


def compute_sdl(gross_monthly: Decimal, rates: StatutoryRates, is_exempt: bool = False) -> Decimal:
    """Employer Skills Development Levy for one month."""
    if is_exempt or gross_monthly <= 0:
        return ZERO
    return round_cents(to_decimal(gross_monthly) * rates.sdl_rate)


def compute_retirement_deduction(
    gross_monthly: Decimal,
    percentage: Optional[Decimal] = None,
    fixed_amount: Optional[Decimal] = None,
) -> Decimal:
    """
    Pension or provident fund contribution.
    
    A percentage of gross takes precedence over a fixed amount.
    """
    if percentage is not None:
        if percentage < 0 or percentage > 1:
            raise PayrollValidationError(
                f"Retirement percentage must be a fraction between 0 and 1, got {percentage}",
                field="percentage",
            )
        return round_cents(to_decimal(gross_monthly) * to_decimal(percentage))
    if fixed_amount is not None:
        return round_cents(max(to_decimal(fixed_amount), ZERO))
    return ZERO


class StatutoryRateService:
    """Resolves the statutory rates in force on a date."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def get_rates(self, on_date: date) -> StatutoryRates:
        """
        Rates whose effective range covers on_date.
        
        Raises:
            ConfigurationError: no rate configured for the date
        """
        result = await self.db.execute(
            select(StatutoryRate)
            .where(StatutoryRate.effective_from <= on_date)
            .where(or_(StatutoryRate.effective_to.is_(None), StatutoryRate.effective_to >= on_date))
            .order_by(StatutoryRate.effective_from.desc())
        )
        rate = result.scalars().first()
        if rate is None:
            raise ConfigurationError(
                f"No UIF/SDL rates configured for {on_date.isoformat()}",
                code=ErrorCode.MISSING_RATE_TABLE,
            )
        return StatutoryRates.from_model(rate)
    
    async def list_rates(self) -> List[StatutoryRate]:
        result = await self.db.execute(select(StatutoryRate).order_by(StatutoryRate.effective_from))
        return list(result.scalars().all())
    
    async def add_rate(
        self,
        effective_from: date,
        uif_rate: Decimal,
        uif_monthly_cap: Decimal,
        sdl_rate: Decimal,
        description: Optional[str] = None,
    ) -> StatutoryRate:
        """
        Start a new rate period, closing the currently open one the day before.
        
        Existing periods are never rewritten except for closing the open end.
        """
        current = await self.db.execute(
            select(StatutoryRate).where(StatutoryRate.effective_to.is_(None))
        )
        for open_rate in current.scalars().all():
            if open_rate.effective_from >= effective_from:
                raise ConfigurationError(
                    f"A rate period already starts on or after {effective_from.isoformat()}",
                )
            open_rate.effective_to = date.fromordinal(effective_from.toordinal() - 1)
        
        rate = StatutoryRate(
            effective_from=effective_from,
            uif_rate=to_decimal(uif_rate),
            uif_monthly_cap=to_decimal(uif_monthly_cap),
            sdl_rate=to_decimal(sdl_rate),
            description=description,
        )
        self.db.add(rate)
        await self.db.flush()
        logger.info(f"Added statutory rates effective {effective_from.isoformat()}")
        return rate
