"""Create payroll core tables

Revision ID: 20260301_0900
Revises:
Create Date: 2026-03-01 09:00:00.000000

This migration creates the complete payroll core:
- practices, employees: employer and employee master data read by payroll
- employee_deductions, employee_fringe_benefits: recurring compensation inputs
- tax_years, tax_brackets: versioned SARS tax tables
- statutory_rates: UIF and SDL rates by effective date
- payroll_runs, payroll_entries, payroll_additions, payroll_line_items
- pay_advances: salary advances recovered through payroll
- employee_ytd: cached year-to-date ledger
- payroll_audit_logs: hash-chained calculation records
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20260301_0900'
down_revision = None
branch_labels = None
depends_on = None


EMPLOYMENT_STATUS = sa.Enum('ACTIVE', 'ON_LEAVE', 'SUSPENDED', 'TERMINATED', 'RESIGNED', name='employmentstatus')
PAY_FREQUENCY = sa.Enum('WEEKLY', 'FORTNIGHTLY', 'MONTHLY', name='payfrequency')
DEDUCTION_TYPE = sa.Enum('PENSION', 'MEDICAL_AID', 'OTHER', name='deductiontype')
PAYROLL_STATUS = sa.Enum('DRAFT', 'PROCESSED', 'PAID', name='payrollstatus')
PAYMENT_TYPE = sa.Enum('BONUS', 'OVERTIME', 'COMMISSION', 'THIRTEENTH_CHEQUE', 'OTHER', name='paymenttype')
LINE_ITEM_KIND = sa.Enum('PAYE', 'UIF', 'PENSION', 'MEDICAL_AID', 'OTHER', 'ADDITION', 'SDL', name='lineitemkind')
PAY_ADVANCE_STATUS = sa.Enum('PENDING', 'APPROVED', 'REJECTED', 'DEDUCTED', name='payadvancestatus')
AUDIT_EVENT = sa.Enum('CALCULATION', 'REVERSAL', name='auditevent')


def table_exists(table_name: str) -> bool:
    """Check if a table exists."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    return table_name in inspector.get_table_names()


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def audit_columns():
    return [
        sa.Column('created_by_id', sa.Uuid, nullable=True),
        sa.Column('updated_by_id', sa.Uuid, nullable=True),
    ]


def money(name: str, nullable: bool = False, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(15, 2), nullable=nullable, **kwargs)


def upgrade() -> None:
    # ===========================================
    # PRACTICES TABLE
    # ===========================================
    if not table_exists('practices'):
        op.create_table('practices',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('name', sa.String(200), nullable=False),
            sa.Column('trading_name', sa.String(200), nullable=True),
            sa.Column('paye_reference_number', sa.String(20), nullable=True, comment='SARS PAYE reference (7xxxxxxxxx)'),
            sa.Column('uif_reference_number', sa.String(20), nullable=True),
            sa.Column('sdl_reference_number', sa.String(20), nullable=True),
            sa.Column('sdl_exempt', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('address', sa.Text, nullable=True),
            *timestamps(),
        )

    # ===========================================
    # EMPLOYEES TABLE
    # ===========================================
    if not table_exists('employees'):
        op.create_table('employees',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('practice_id', sa.Uuid, sa.ForeignKey('practices.id', ondelete='CASCADE'), nullable=False, index=True),

            # Identification
            sa.Column('employee_number', sa.String(50), nullable=False, comment='Internal staff number'),
            sa.Column('first_name', sa.String(100), nullable=False),
            sa.Column('last_name', sa.String(100), nullable=False),
            sa.Column('email', sa.String(255), nullable=True),
            sa.Column('id_number', sa.String(20), nullable=True),
            sa.Column('tax_number', sa.String(20), nullable=True),
            sa.Column('date_of_birth', sa.Date, nullable=True),

            # Employment
            sa.Column('start_date', sa.Date, nullable=True),
            sa.Column('end_date', sa.Date, nullable=True),
            sa.Column('employment_status', EMPLOYMENT_STATUS, nullable=False),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),

            # Compensation
            money('gross_salary', nullable=True, comment='Contractual salary per pay_frequency period'),
            sa.Column('pay_frequency', PAY_FREQUENCY, nullable=False),
            sa.Column('uif_exempt', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('uif_exemption_reason', sa.String(200), nullable=True),
            money('paye_override', nullable=True, comment='Fixed monthly PAYE directive replacing the table calculation'),
            sa.Column('medical_aid_dependants', sa.Integer, nullable=False, server_default='0'),

            # Banking
            sa.Column('bank_name', sa.String(100), nullable=True),
            sa.Column('bank_account_number', sa.String(30), nullable=True),
            sa.Column('bank_branch_code', sa.String(10), nullable=True),
            sa.Column('bank_account_type', sa.String(20), nullable=True),
            sa.Column('bank_account_holder', sa.String(200), nullable=True),

            sa.Column('notes', sa.Text, nullable=True),
            *audit_columns(),
            *timestamps(),
            sa.UniqueConstraint('practice_id', 'employee_number', name='uq_employee_practice_number'),
        )

    if not table_exists('employee_deductions'):
        op.create_table('employee_deductions',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('deduction_type', DEDUCTION_TYPE, nullable=False),
            sa.Column('description', sa.String(200), nullable=False),
            money('amount', nullable=True),
            sa.Column('percentage', sa.Numeric(7, 4), nullable=True, comment='Fraction of gross salary e.g. 0.0750'),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('effective_from', sa.Date, nullable=True),
            sa.Column('effective_to', sa.Date, nullable=True),
            *timestamps(),
        )

    if not table_exists('employee_fringe_benefits'):
        op.create_table('employee_fringe_benefits',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('benefit_type', sa.String(50), nullable=False),
            sa.Column('description', sa.String(200), nullable=False),
            money('monthly_value', comment='Monthly taxable value'),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('effective_from', sa.Date, nullable=True),
            sa.Column('effective_to', sa.Date, nullable=True),
            *timestamps(),
        )

    # ===========================================
    # TAX TABLES
    # ===========================================
    if not table_exists('tax_years'):
        op.create_table('tax_years',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('label', sa.String(9), nullable=False, unique=True, comment='Tax year label e.g. 2024/2025'),
            sa.Column('start_date', sa.Date, nullable=False),
            sa.Column('end_date', sa.Date, nullable=False),
            sa.Column('description', sa.Text, nullable=True),

            # Rebates and thresholds
            money('primary_rebate'),
            money('secondary_rebate'),
            money('tertiary_rebate'),
            money('threshold_under_65'),
            money('threshold_65_to_74'),
            money('threshold_75_and_over'),

            # Medical scheme fees tax credits (monthly)
            money('medical_credit_main'),
            money('medical_credit_first_dependant'),
            money('medical_credit_additional'),

            # Publication
            sa.Column('is_published', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('published_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('version', sa.String(64), nullable=True, comment='SHA-256 of the canonical table content, stamped on publish'),

            *audit_columns(),
            *timestamps(),
            sa.CheckConstraint('end_date > start_date', name='ck_tax_year_dates'),
        )

    if not table_exists('tax_brackets'):
        op.create_table('tax_brackets',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('tax_year_id', sa.Uuid, sa.ForeignKey('tax_years.id', ondelete='CASCADE'), nullable=False, index=True),
            money('lower_bound'),
            money('upper_bound', nullable=True, comment='NULL for the top band'),
            sa.Column('rate', sa.Numeric(7, 4), nullable=False, comment='Marginal rate as a fraction e.g. 0.1800'),
            money('base_tax', nullable=True, comment='Published tax on lower_bound, checked against the computed value'),
            *timestamps(),
            sa.UniqueConstraint('tax_year_id', 'lower_bound', name='uq_tax_bracket_year_lower'),
        )

    if not table_exists('statutory_rates'):
        op.create_table('statutory_rates',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('effective_from', sa.Date, nullable=False, index=True),
            sa.Column('effective_to', sa.Date, nullable=True, comment='NULL while the rate is current'),
            sa.Column('uif_rate', sa.Numeric(7, 4), nullable=False, comment='Employee UIF rate; the employer matches it'),
            money('uif_monthly_cap', comment='Maximum monthly UIF contribution per party'),
            sa.Column('sdl_rate', sa.Numeric(7, 4), nullable=False),
            sa.Column('description', sa.Text, nullable=True),
            *audit_columns(),
            *timestamps(),
        )

    # ===========================================
    # PAYROLL RUNS TABLE
    # ===========================================
    if not table_exists('payroll_runs'):
        op.create_table('payroll_runs',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('practice_id', sa.Uuid, sa.ForeignKey('practices.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('month', sa.Integer, nullable=False),
            sa.Column('year', sa.Integer, nullable=False),
            sa.Column('tax_year', sa.String(9), nullable=False, comment='Tax year label the run was calculated under'),
            sa.Column('tax_table_version', sa.String(64), nullable=True),
            sa.Column('status', PAYROLL_STATUS, nullable=False),
            sa.Column('generation', sa.Integer, nullable=False, server_default='0', comment='Bumped on every (re)generation; guards concurrent writers'),

            # Totals
            sa.Column('employee_count', sa.Integer, nullable=False, server_default='0'),
            money('total_gross', server_default='0'),
            money('total_additions', server_default='0'),
            money('total_paye', server_default='0'),
            money('total_uif_employee', server_default='0'),
            money('total_deductions', server_default='0'),
            money('total_net', server_default='0'),
            money('total_employer_uif', server_default='0'),
            money('total_employer_sdl', server_default='0'),

            # Workflow
            sa.Column('generated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('processed_by_id', sa.Uuid, nullable=True),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payment_date', sa.Date, nullable=True),
            sa.Column('reversal_count', sa.Integer, nullable=False, server_default='0'),
            sa.Column('declaration_submitted', sa.Boolean, nullable=False, server_default=sa.false(), comment='Monthly declaration for this run filed with the revenue service'),
            sa.Column('declaration_submitted_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('notes', sa.Text, nullable=True),

            *audit_columns(),
            *timestamps(),
            sa.UniqueConstraint('practice_id', 'year', 'month', name='uq_payroll_run_practice_period'),
            sa.CheckConstraint('month BETWEEN 1 AND 12', name='ck_payroll_run_month'),
        )

    # ===========================================
    # PAYROLL ENTRIES TABLE
    # ===========================================
    if not table_exists('payroll_entries'):
        op.create_table('payroll_entries',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('payroll_run_id', sa.Uuid, sa.ForeignKey('payroll_runs.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False, index=True),

            # Earnings
            money('gross_salary'),
            money('total_additions', server_default='0'),
            money('fringe_benefits', server_default='0', comment='Taxable non-cash benefits, not paid out'),
            money('taxable_income'),

            # Employee deductions
            money('paye_amount', server_default='0'),
            money('uif_amount', server_default='0'),
            money('pension_amount', server_default='0'),
            money('medical_aid_amount', server_default='0'),
            money('other_deductions', server_default='0'),
            money('pay_advance_amount', server_default='0'),
            money('total_deductions', server_default='0'),
            money('net_salary'),
            money('medical_tax_credit', server_default='0'),

            # Employer contributions
            money('employer_uif', server_default='0'),
            money('employer_sdl', server_default='0'),

            sa.Column('compensation_snapshot', sa.JSON, nullable=False),
            sa.Column('calculation', sa.JSON, nullable=False),
            sa.Column('validation_warnings', sa.JSON, nullable=False),
            sa.Column('payslip_blocked', sa.Boolean, nullable=False, server_default=sa.false(), comment='Payslip delivery withheld, e.g. missing banking details'),

            *timestamps(),
            sa.UniqueConstraint('payroll_run_id', 'employee_id', name='uq_payroll_entry_run_employee'),
        )

    if not table_exists('payroll_additions'):
        op.create_table('payroll_additions',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('payroll_entry_id', sa.Uuid, sa.ForeignKey('payroll_entries.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('description', sa.String(200), nullable=False),
            money('amount'),
            sa.Column('payment_type', PAYMENT_TYPE, nullable=False),
            *audit_columns(),
            *timestamps(),
            sa.CheckConstraint('amount > 0', name='ck_payroll_addition_positive'),
        )

    if not table_exists('payroll_line_items'):
        op.create_table('payroll_line_items',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('payroll_entry_id', sa.Uuid, sa.ForeignKey('payroll_entries.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('kind', LINE_ITEM_KIND, nullable=False),
            sa.Column('label', sa.String(200), nullable=False),
            money('amount'),
            sa.Column('is_employer_contribution', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('reference_id', sa.Uuid, nullable=True, comment='Source record, e.g. the pay advance or deduction'),
            sa.Column('sort_order', sa.Integer, nullable=False, server_default='0'),
            *timestamps(),
        )

    # ===========================================
    # PAY ADVANCES TABLE
    # ===========================================
    if not table_exists('pay_advances'):
        op.create_table('pay_advances',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('practice_id', sa.Uuid, sa.ForeignKey('practices.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False, index=True),
            money('requested_amount'),
            money('approved_amount', nullable=True),
            sa.Column('reason', sa.Text, nullable=True),
            sa.Column('status', PAY_ADVANCE_STATUS, nullable=False),
            sa.Column('decided_by_id', sa.Uuid, nullable=True),
            sa.Column('decided_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('rejection_reason', sa.String(500), nullable=True),
            sa.Column('payroll_run_id', sa.Uuid, sa.ForeignKey('payroll_runs.id', ondelete='SET NULL'), nullable=True, index=True, comment='Run that recovers the advance'),
            sa.Column('deducted_at', sa.DateTime(timezone=True), nullable=True),
            *timestamps(),
            sa.CheckConstraint('requested_amount > 0', name='ck_pay_advance_positive'),
        )

    # ===========================================
    # YTD LEDGER TABLE
    # ===========================================
    if not table_exists('employee_ytd'):
        ytd_columns = [
            sa.Column(name, sa.Numeric(18, 2), nullable=False, server_default='0')
            for name in (
                'ytd_gross', 'ytd_taxable_income', 'ytd_fringe_benefits',
                'ytd_paye', 'ytd_uif_employee', 'ytd_uif_employer', 'ytd_sdl', 'ytd_medical_credits',
                'ytd_pension', 'ytd_medical_aid', 'ytd_other_deductions', 'ytd_total_deductions', 'ytd_net',
            )
        ]
        op.create_table('employee_ytd',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('practice_id', sa.Uuid, sa.ForeignKey('practices.id', ondelete='CASCADE'), nullable=False, index=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
            sa.Column('tax_year', sa.String(9), nullable=False),
            *ytd_columns,
            sa.Column('periods_processed', sa.Integer, nullable=False, server_default='0'),
            sa.Column('last_payroll_run_id', sa.Uuid, nullable=True),
            sa.Column('last_updated_at', sa.DateTime(timezone=True), nullable=True),
            *timestamps(),
            sa.UniqueConstraint('employee_id', 'tax_year', name='uq_employee_ytd_employee_year'),
        )
        op.create_index('ix_employee_ytd_practice_year', 'employee_ytd', ['practice_id', 'tax_year'])

    # ===========================================
    # AUDIT LOG TABLE
    # ===========================================
    if not table_exists('payroll_audit_logs'):
        op.create_table('payroll_audit_logs',
            sa.Column('id', sa.Uuid, primary_key=True),
            sa.Column('practice_id', sa.Uuid, sa.ForeignKey('practices.id', ondelete='RESTRICT'), nullable=False, index=True),
            sa.Column('payroll_run_id', sa.Uuid, sa.ForeignKey('payroll_runs.id', ondelete='RESTRICT'), nullable=False, index=True),
            sa.Column('payroll_entry_id', sa.Uuid, nullable=False, index=True),
            sa.Column('employee_id', sa.Uuid, sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
            sa.Column('event', AUDIT_EVENT, nullable=False),
            sa.Column('tax_year', sa.String(9), nullable=False),
            sa.Column('tax_table_version', sa.String(64), nullable=False),
            sa.Column('period_month', sa.Integer, nullable=False),
            sa.Column('period_year', sa.Integer, nullable=False),
            sa.Column('sequence', sa.Integer, nullable=False, comment="Position in the employee's chain for the tax year"),

            # Headline figures (signed; reversals are negative)
            money('gross_remuneration'),
            money('taxable_income'),
            money('paye'),
            money('uif_employee'),
            money('uif_employer'),
            money('sdl'),
            money('net_salary'),

            sa.Column('input_snapshot', sa.JSON, nullable=False),
            sa.Column('calculation', sa.JSON, nullable=False),
            sa.Column('reason', sa.Text, nullable=True),
            sa.Column('recorded_by_id', sa.Uuid, nullable=True),
            sa.Column('previous_hash', sa.String(64), nullable=True),
            sa.Column('content_hash', sa.String(64), nullable=False, comment='SHA-256 of the row content and previous_hash'),

            *timestamps(),
            sa.UniqueConstraint('employee_id', 'tax_year', 'sequence', name='uq_payroll_audit_chain_position'),
        )
        op.create_index('ix_payroll_audit_run', 'payroll_audit_logs', ['payroll_run_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_payroll_audit_run', table_name='payroll_audit_logs')
    op.drop_table('payroll_audit_logs')
    op.drop_index('ix_employee_ytd_practice_year', table_name='employee_ytd')
    op.drop_table('employee_ytd')
    op.drop_table('pay_advances')
    op.drop_table('payroll_line_items')
    op.drop_table('payroll_additions')
    op.drop_table('payroll_entries')
    op.drop_table('payroll_runs')
    op.drop_table('statutory_rates')
    op.drop_table('tax_brackets')
    op.drop_table('tax_years')
    op.drop_table('employee_fringe_benefits')
    op.drop_table('employee_deductions')
    op.drop_table('employees')
    op.drop_table('practices')

    bind = op.get_bind()
    for enum_type in (
        AUDIT_EVENT, PAY_ADVANCE_STATUS, LINE_ITEM_KIND, PAYMENT_TYPE,
        PAYROLL_STATUS, DEDUCTION_TYPE, PAY_FREQUENCY, EMPLOYMENT_STATUS,
    ):
        enum_type.drop(bind, checkfirst=True)
