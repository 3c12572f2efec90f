import logging
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

# Columns ensured on startup: (table, column, type, options).
# create_all() never alters existing tables; new columns are listed here so
# databases created by an earlier build pick them up.
COLUMN_MIGRATIONS = [
    ("users", "coin_balance", "INTEGER", "NOT NULL DEFAULT 0"),
    ("users", "status", "VARCHAR", "NOT NULL DEFAULT 'active'"),
    ("coin_requests", "decided_by", "VARCHAR", "NULL"),
    ("tournaments", "rules", "TEXT", "NULL"),
    ("tournaments", "room_id", "VARCHAR", "NULL"),
    ("tournaments", "room_password", "VARCHAR", "NULL"),
    ("points_table", "entry_order", "INTEGER", "NOT NULL DEFAULT 0"),
]


def run_migrations_sync(connection) -> list[str]:
    """
    Add any missing columns from COLUMN_MIGRATIONS.
    Safe to run on every startup (idempotent). Returns the columns added.
    """
    logger.info(f"Running migrations for dialect: {connection.dialect.name}")
    inspector = inspect(connection)
    tables = set(inspector.get_table_names())
    added = []

    for table, col, col_type, options in COLUMN_MIGRATIONS:
        if table not in tables:
            logger.debug(f"Table {table} missing, create_all will build it.")
            continue
        existing = {c["name"] for c in inspector.get_columns(table)}
        if col in existing:
            logger.debug(f"Column {table}.{col} already exists.")
            continue

        logger.info(f"Migrating: Adding {col} to {table}")
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {col_type} {options}"))
        added.append(f"{table}.{col}")

    return added


async def run_async_migrations(engine: AsyncEngine) -> list[str]:
    async with engine.begin() as conn:
        return await conn.run_sync(run_migrations_sync)
