#!/usr/bin/env python3
"""
Create the stored_object_references table in Snowflake.

Usage:
    python scripts/create_reference_table.py
    python scripts/create_reference_table.py --print-sql

Requires:
    - .env file with Snowflake credentials (unless --print-sql)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from upload_broker.config.settings import Settings
from upload_broker.infrastructure.snowflake.client import (
    SnowflakeConnectionError,
    create_snowflake_connection,
)
from upload_broker.infrastructure.snowflake.repositories.references import (
    CREATE_TABLE_SQL,
    SnowflakeConfig,
)


def build_config(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        private_key_base64=settings.snowflake_private_key_base64,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the stored object reference table")
    parser.add_argument(
        "--print-sql",
        action="store_true",
        help="Print the DDL and exit without connecting",
    )
    args = parser.parse_args()

    if args.print_sql:
        print(CREATE_TABLE_SQL.strip())
        return 0

    settings = Settings()
    if not settings.snowflake_account or not settings.snowflake_user:
        print("ERROR: Missing SNOWFLAKE_ACCOUNT or SNOWFLAKE_USER")
        return 1

    config = build_config(settings)
    print(f"Connecting to Snowflake account: {config.account} ({config.database}.{config.schema})...")

    try:
        with create_snowflake_connection(config=config) as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(CREATE_TABLE_SQL)
                conn.commit()
            finally:
                cursor.close()
    except SnowflakeConnectionError as e:
        print(f"ERROR: Connection failed: {e}")
        return 1

    print("Table stored_object_references is ready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
