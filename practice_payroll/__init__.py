"""
Practice Payroll

South African payroll computation and statutory compliance reporting
for healthcare practices: PAYE, UIF and SDL, year-to-date ledgers,
an append-only audit trail and the EMP201, EMP501 and IRP5 equivalents.
"""

__version__ = "1.0.0"
