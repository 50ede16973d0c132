"""
Practice Payroll - Celery Configuration

Celery configuration for scheduled payroll checks.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from practice_payroll.config import settings
from practice_payroll.logging_config import configure_logging


# Create Celery app
celery_app = Celery(
    'practice_payroll',
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=['practice_payroll.tasks.payroll_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    
    # Timezone
    timezone=settings.celery_timezone,
    enable_utc=True,
    
    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes
    task_soft_time_limit=840,
    
    # Worker settings
    worker_prefetch_multiplier=1,
    
    # Result backend settings
    result_expires=86400,  # 24 hours
    
    # Beat schedule for periodic tasks
    beat_schedule={
        # Rebuild YTD from payroll entries and report drift
        'check-ytd-drift': {
            'task': 'practice_payroll.tasks.payroll_tasks.check_ytd_drift',
            'schedule': crontab(hour=settings.ytd_drift_check_hour, minute=0),
        },
        
        # Monthly declaration reminder, two days before it is due
        'declaration-reminder': {
            'task': 'practice_payroll.tasks.payroll_tasks.declaration_reminder',
            'schedule': crontab(day_of_month=max(settings.declaration_due_day - 2, 1), hour=8, minute=0),
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
