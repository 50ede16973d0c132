"""
Practice Payroll - YTD Schemas
"""

from decimal import Decimal
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel

from practice_payroll.models.ytd import YTD_FIELDS, EmployeeYTD


class YTDFigures(BaseModel):
    """Year-to-date totals for one employee and tax year."""
    employee_id: UUID
    tax_year: str
    ytd_gross: Decimal = Decimal("0.00")
    ytd_taxable_income: Decimal = Decimal("0.00")
    ytd_paye: Decimal = Decimal("0.00")
    ytd_uif_employee: Decimal = Decimal("0.00")
    ytd_uif_employer: Decimal = Decimal("0.00")
    ytd_sdl: Decimal = Decimal("0.00")
    ytd_pension: Decimal = Decimal("0.00")
    ytd_medical_aid: Decimal = Decimal("0.00")
    ytd_other_deductions: Decimal = Decimal("0.00")
    ytd_total_deductions: Decimal = Decimal("0.00")
    ytd_net: Decimal = Decimal("0.00")
    ytd_fringe_benefits: Decimal = Decimal("0.00")
    ytd_medical_credits: Decimal = Decimal("0.00")
    periods_processed: int = 0
    
    @classmethod
    def from_model(cls, ytd: EmployeeYTD) -> "YTDFigures":
        values = {name: getattr(ytd, name) for name in YTD_FIELDS}
        return cls(
            employee_id=ytd.employee_id,
            tax_year=ytd.tax_year,
            periods_processed=ytd.periods_processed,
            **values,
        )
    
    def amounts(self) -> Dict[str, Decimal]:
        return {name: getattr(self, name) for name in YTD_FIELDS}


class YTDDiscrepancy(BaseModel):
    """Cached ledger value that disagrees with the reconstructed value."""
    employee_id: UUID
    tax_year: str
    field: str
    cached: Optional[Decimal]
    reconstructed: Decimal
    
    @property
    def difference(self) -> Decimal:
        return (self.cached or Decimal("0")) - self.reconstructed
