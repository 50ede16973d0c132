"""
Practice Payroll - Tax Calculators Package

Tax calculation services for the SARS payroll taxes.

Modules:
- paye_service: PAYE from the published tax tables, rebates and medical credits
- statutory_service: UIF (capped, matched by the employer) and SDL (employer only)
"""

from practice_payroll.services.tax_calculators.paye_service import (
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
from practice_payroll.services.tax_calculators.statutory_service import (
    StatutoryRates,
    StatutoryRateService,
    UIFResult,
    compute_retirement_deduction,
    compute_sdl,
    compute_uif,
)

__all__ = [
    # PAYE
    "PAYECalculator",
    "TaxBracketBand",
    "TaxTable",
    "TaxTableService",
    "age_at_tax_year_end",
    "calendar_month_for_period",
    "compute_annual_paye",
    "monthly_paye",
    "period_number",
    "tax_year_bounds",
    "tax_year_label_for",
    # UIF / SDL
    "StatutoryRates",
    "StatutoryRateService",
    "UIFResult",
    "compute_retirement_deduction",
    "compute_sdl",
    "compute_uif",
]
