"""
Scope locking.

Every mutation serializes on its scope: row locks on every member
(SELECT ... FOR UPDATE), plus on PostgreSQL a transaction-scoped advisory
lock so that an empty scope, which has no rows to lock, is serialized too.
Locks are released by the enclosing transaction's commit or rollback.
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import Column, Connection, func, select


logger = logging.getLogger(__name__)


def scope_lock_key(table_name: str, values: Dict[str, Any]) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    canonical = json.dumps([table_name, sorted(values.items())], sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def prepare_scope_lock(
    connection: Connection,
    table_name: str,
    values: Dict[str, Any],
    *,
    lock_timeout_ms: int,
    advisory: bool,
) -> None:
    """Dialect-specific setup run before the member rows are locked."""
    if connection.dialect.name != "postgresql":
        return

    if lock_timeout_ms:
        # is_local=true: reverts at the end of the current transaction
        connection.execute(select(func.set_config("lock_timeout", f"{int(lock_timeout_ms)}ms", True)))
    if advisory:
        key = scope_lock_key(table_name, values)
        connection.execute(select(func.pg_advisory_xact_lock(key)))
        logger.debug("Advisory lock %s taken for %s %s", key, table_name, values)


def lock_member_rows(
    connection: Connection,
    pk: Column,
    position: Column,
    where: List[Any],
) -> List[Tuple[Any, int]]:
    """Return (id, position) for every member of the scope, locked for update, in list order."""
    result = connection.execute(
        select(pk, position)
        .where(*where, position.is_not(None))
        .order_by(position.asc(), pk.asc())
        .with_for_update()
    )
    return [(row[0], row[1]) for row in result]
