"""Query helpers for asserting list state."""

from sqlalchemy import select


def find(session, model, ident):
    """Load a row straight from the database, refreshing any cached instance."""
    return session.get(model, ident, populate_existing=True)


def _ordered(session, model, filters):
    manager = model.__ordered_list__
    query = (
        select(model)
        .filter_by(**filters)
        .order_by(manager.position_column, manager.pk_column)
        .execution_options(populate_existing=True)
    )
    return list(session.scalars(query)), manager


def ids(session, model, **filters):
    """Ids in list order; unlisted rows (NULL position) sort first on SQLite."""
    rows, _manager = _ordered(session, model, filters)
    return [row.id for row in rows]


def positions(session, model, **filters):
    rows, manager = _ordered(session, model, filters)
    return [getattr(row, manager.position_attr) for row in rows]
