"""
Practice Payroll - Test Configuration

Pytest fixtures and configuration.
"""

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import practice_payroll.models  # noqa: F401
from practice_payroll.database import Base
from practice_payroll.models import (
    DeductionType,
    Employee,
    EmployeeDeduction,
    EmployeeFringeBenefit,
    EmploymentStatus,
    PayFrequency,
    Practice,
)
from practice_payroll.services.tax_calculators.paye_service import TaxBracketBand, TaxTable
from practice_payroll.services.tax_calculators.sars_tables import (
    SARS_TAX_YEARS,
    seed_sars_tables,
)
from practice_payroll.services.tax_calculators.statutory_service import StatutoryRates


# In-memory database shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh schema for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    """Session factory bound to the test engine, configured like the application's."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def sars_tables(db_session: AsyncSession):
    """Published 2024/2025 and 2025/2026 tables plus UIF/SDL rates."""
    return await seed_sars_tables(db_session)


@pytest_asyncio.fixture(scope="function")
async def practice(db_session: AsyncSession) -> Practice:
    practice = Practice(
        name="Sunrise Family Practice",
        trading_name="Sunrise Medical",
        paye_reference_number="7000000001",
        uif_reference_number="U000000001",
        sdl_reference_number="L000000001",
        sdl_exempt=False,
        employees=[],
        payroll_runs=[],
    )
    db_session.add(practice)
    await db_session.commit()
    return practice


@pytest_asyncio.fixture(scope="function")
async def employee_factory(db_session: AsyncSession, practice: Practice):
    """
    Create employees for the test practice.

    Deductions and fringe benefits are passed as lists of model instances so
    the collections are populated before the payroll engine reads them.
    """
    async def create(
        employee_number: str = "EMP001",
        gross_salary=Decimal("30000.00"),
        deductions=None,
        fringe_benefits=None,
        **overrides,
    ) -> Employee:
        values = dict(
            practice_id=practice.id,
            employee_number=employee_number,
            first_name="Thandi",
            last_name="Nkosi",
            email=f"{employee_number.lower()}@sunrise.example",
            id_number="8506150123081",
            tax_number="0123456789",
            date_of_birth=date(1985, 6, 15),
            start_date=date(2020, 1, 1),
            employment_status=EmploymentStatus.ACTIVE,
            is_active=True,
            gross_salary=gross_salary,
            pay_frequency=PayFrequency.MONTHLY,
            uif_exempt=False,
            medical_aid_dependants=0,
            bank_name="First National Bank",
            bank_account_number="1234567890",
            bank_branch_code="250655",
            bank_account_type="cheque",
        )
        values.update(overrides)
        employee = Employee(
            deductions=list(deductions or []),
            fringe_benefits=list(fringe_benefits or []),
            **values,
        )
        db_session.add(employee)
        await db_session.commit()
        return employee

    return create


@pytest_asyncio.fixture(scope="function")
async def employee(employee_factory) -> Employee:
    """R30,000 per month, no deductions, born 1985."""
    return await employee_factory()


# ===========================================
# PURE CALCULATION FIXTURES
# ===========================================

@pytest.fixture
def table_2024() -> TaxTable:
    """2024/2025 table built in memory from the published figures."""
    figures = SARS_TAX_YEARS["2024/2025"]
    return TaxTable(
        tax_year="2024/2025",
        start_date=date(2024, 3, 1),
        end_date=date(2025, 2, 28),
        brackets=tuple(
            TaxBracketBand(lower=lower, upper=upper, rate=rate, base_tax=base_tax)
            for lower, upper, rate, base_tax in figures["brackets"]
        ),
        primary_rebate=figures["primary_rebate"],
        secondary_rebate=figures["secondary_rebate"],
        tertiary_rebate=figures["tertiary_rebate"],
        threshold_under_65=figures["threshold_under_65"],
        threshold_65_to_74=figures["threshold_65_to_74"],
        threshold_75_and_over=figures["threshold_75_and_over"],
        medical_credit_main=figures["medical_credit_main"],
        medical_credit_first_dependant=figures["medical_credit_first_dependant"],
        medical_credit_additional=figures["medical_credit_additional"],
    )


@pytest.fixture
def statutory_rates() -> StatutoryRates:
    return StatutoryRates(
        uif_rate=Decimal("0.01"),
        uif_monthly_cap=Decimal("177.12"),
        sdl_rate=Decimal("0.01"),
        effective_from=date(2024, 3, 1),
    )


def medical_aid(amount: str = "3500.00") -> EmployeeDeduction:
    return EmployeeDeduction(
        deduction_type=DeductionType.MEDICAL_AID,
        description="Discovery Health",
        amount=Decimal(amount),
        is_active=True,
    )


def pension(percentage: str = "0.075") -> EmployeeDeduction:
    return EmployeeDeduction(
        deduction_type=DeductionType.PENSION,
        description="Practice pension fund",
        percentage=Decimal(percentage),
        is_active=True,
    )


def car_allowance(value: str = "2000.00") -> EmployeeFringeBenefit:
    return EmployeeFringeBenefit(
        benefit_type="company_car",
        description="Company car",
        monthly_value=Decimal(value),
        is_active=True,
    )


@pytest.fixture
def deduction_builders():
    """Builders for recurring deductions and fringe benefits."""
    return {
        "medical_aid": medical_aid,
        "pension": pension,
        "car_allowance": car_allowance,
    }
