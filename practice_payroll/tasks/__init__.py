"""
Practice Payroll - Background Tasks Package

Celery background tasks.
"""

from practice_payroll.tasks.payroll_tasks import (
    check_ytd_drift,
    declaration_reminder,
    run_async,
)

__all__ = [
    "check_ytd_drift",
    "declaration_reminder",
    "run_async",
]
