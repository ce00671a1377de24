"""Dialect-aware `INSERT ... ON CONFLICT DO NOTHING` helper.

PostgreSQL runs in production and SQLite in tests; both support the same
conflict clause through their dialect-specific `insert` constructs.
"""

from sqlalchemy.dialects import postgresql, sqlite


def insert_if_absent(db, model, values: dict, index_elements: list[str]) -> bool:
    """Insert one row unless a row with the same key already exists.

    Returns True when this call created the row.
    """

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"unsupported dialect for conflict-free insert: {dialect}")
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = db.execute(stmt)
    return result.rowcount == 1
