"""
Practice Payroll - Published SARS Tables

Bracket tables, rebates, thresholds and medical scheme fees tax credits
as published by SARS, plus the UIF/SDL rates in force. Loaded into the
database by scripts/seed_tax_tables.py; the engine only ever reads them
from there.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession

from practice_payroll.services.tax_calculators.paye_service import TaxTableService
from practice_payroll.services.tax_calculators.statutory_service import StatutoryRateService

logger = logging.getLogger(__name__)


# (lower, upper, rate, tax on lower bound); rates unchanged since 2023/2024
_BRACKETS_2024_TO_2026 = [
    (Decimal("0"), Decimal("237100"), Decimal("0.18"), Decimal("0")),
    (Decimal("237100"), Decimal("370500"), Decimal("0.26"), Decimal("42678")),
    (Decimal("370500"), Decimal("512800"), Decimal("0.31"), Decimal("77362")),
    (Decimal("512800"), Decimal("673000"), Decimal("0.36"), Decimal("121475")),
    (Decimal("673000"), Decimal("857900"), Decimal("0.39"), Decimal("179147")),
    (Decimal("857900"), Decimal("1817000"), Decimal("0.41"), Decimal("251258")),
    (Decimal("1817000"), None, Decimal("0.45"), Decimal("644489")),
]

_REBATES_AND_THRESHOLDS_2024_TO_2026 = {
    "primary_rebate": Decimal("17235"),
    "secondary_rebate": Decimal("9444"),
    "tertiary_rebate": Decimal("3145"),
    "threshold_under_65": Decimal("95750"),
    "threshold_65_to_74": Decimal("148217"),
    "threshold_75_and_over": Decimal("165689"),
    "medical_credit_main": Decimal("364"),
    "medical_credit_first_dependant": Decimal("364"),
    "medical_credit_additional": Decimal("246"),
}

SARS_TAX_YEARS: Dict[str, Dict[str, Any]] = {
    "2024/2025": {
        "description": "SARS tax tables 1 March 2024 - 28 February 2025",
        "brackets": _BRACKETS_2024_TO_2026,
        **_REBATES_AND_THRESHOLDS_2024_TO_2026,
    },
    "2025/2026": {
        "description": "SARS tax tables 1 March 2025 - 28 February 2026",
        "brackets": _BRACKETS_2024_TO_2026,
        **_REBATES_AND_THRESHOLDS_2024_TO_2026,
    },
}

# UIF: 1% each, on remuneration up to R17,712 per month
STATUTORY_RATES: List[Dict[str, Any]] = [
    {
        "effective_from": date(2024, 3, 1),
        "uif_rate": Decimal("0.01"),
        "uif_monthly_cap": Decimal("177.12"),
        "sdl_rate": Decimal("0.01"),
        "description": "UIF ceiling R17,712 per month; SDL 1%",
    },
]


async def seed_sars_tables(db: AsyncSession, publish: bool = True) -> List[str]:
    """
    Create every tax year and statutory rate period that does not exist yet.

    Existing tax years are left untouched; published tables are immutable.
    Returns the labels of the tax years created. Commits.
    """
    tax_tables = TaxTableService(db)
    rates = StatutoryRateService(db)
    created = []

    existing_years = {y.label for y in await tax_tables.list_tax_years(published_only=False)}
    for label, table in SARS_TAX_YEARS.items():
        if label in existing_years:
            logger.info(f"Tax year {label} already present, skipping")
            continue
        await tax_tables.create_tax_year(label, publish=publish, **table)
        created.append(label)

    existing_rates = {r.effective_from for r in await rates.list_rates()}
    for rate in STATUTORY_RATES:
        if rate["effective_from"] not in existing_rates:
            await rates.add_rate(**rate)

    await db.commit()
    return created
