"""
Practice Payroll - Logging Configuration

Scripts and the Celery worker call configure_logging() once at start-up;
library modules only ever use logging.getLogger(__name__).
"""

import logging
from typing import Optional

from practice_payroll.config import settings


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the process."""
    level_name = (level or settings.log_level).upper()
    if settings.debug:
        level_name = "DEBUG"
    
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
    )
    # SQL echo is controlled by database_echo, keep the engine logger quiet otherwise
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
