"""
Create the TuFund tables.

Usage:
    python -m database.init_db            # create missing tables
    python -m database.init_db --reset    # drop everything first (development only)
"""

import argparse
import logging

from sqlalchemy import inspect

from database.db import create_tables, drop_tables, engine
from database.models import Base

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Create the TuFund database tables")
    parser.add_argument("--reset", action="store_true", help="drop all tables before creating them")
    args = parser.parse_args()

    if args.reset:
        if input(f"Drop every table in {engine.url.render_as_string(hide_password=True)}? [y/N] ").lower() != "y":
            print("Aborted.")
            return
        drop_tables()

    create_tables()

    existing = set(inspect(engine).get_table_names())
    print("\nTables:")
    for table_name in Base.metadata.tables:
        marker = "✅" if table_name in existing else "❌"
        print(f"  {marker} {table_name}")


if __name__ == "__main__":
    main()
