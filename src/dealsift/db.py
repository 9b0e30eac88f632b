"""PostgreSQL database connection via psycopg3."""

import psycopg
from psycopg.rows import dict_row

from dealsift.config import Settings


def get_connection(
    settings: Settings | None = None,
    *,
    autocommit: bool = False,
) -> psycopg.Connection:
    """Open a synchronous connection to PostgreSQL with dict row factory.

    Pass ``autocommit=True`` when the caller manages its own transaction
    blocks via ``conn.transaction()``.
    """
    if settings is None:
        from dealsift.config import get_settings
        settings = get_settings()

    return psycopg.connect(
        settings.database_url,
        row_factory=dict_row,
        autocommit=autocommit,
    )


def execute_query(conn: psycopg.Connection, query: str, params: tuple = ()) -> list[dict]:
    """Execute a query and return all rows as dicts."""
    with conn.cursor() as cur:
        cur.execute(query, params)
        if cur.description:
            return cur.fetchall()
        return []
