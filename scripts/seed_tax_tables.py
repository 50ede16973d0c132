"""
Seed Script: SARS Tax Tables and Statutory Rates
=================================================
Loads the published SARS tax tables (2024/2025, 2025/2026) and the
UIF/SDL rates into the payroll database.

Existing tax years are never overwritten; run it as often as needed.

Usage:
    python scripts/seed_tax_tables.py [--create-tables] [--unpublished]
"""

import argparse
import asyncio
import logging

# Add project root to path
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from practice_payroll.database import async_session_maker, close_db, init_db
from practice_payroll.logging_config import configure_logging
from practice_payroll.services.tax_calculators.sars_tables import seed_sars_tables

logger = logging.getLogger("seed_tax_tables")


async def main(create_tables: bool = False, publish: bool = True) -> None:
    if create_tables:
        await init_db()
    
    try:
        async with async_session_maker() as db:
            created = await seed_sars_tables(db, publish=publish)
    finally:
        await close_db()
    
    if created:
        logger.info(f"Created tax years: {', '.join(created)}")
    else:
        logger.info("All tax years already present")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed SARS tax tables and statutory rates")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    parser.add_argument("--unpublished", action="store_true", help="Load tax years without publishing them")
    args = parser.parse_args()
    
    configure_logging()
    asyncio.run(main(create_tables=args.create_tables, publish=not args.unpublished))
