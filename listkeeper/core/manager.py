"""
Ordered list manager.

Keeps a dense 1..N ``position`` for the rows of a mapped table that share a
scope. Every mutation runs in one transaction (a SAVEPOINT when the session
already has one), locks the scope, re-reads the member ids under that lock
and rewrites only the rows whose position changes with a single
``UPDATE ... SET position = CASE id WHEN ... END``.

Usage:

    class TodoItem(Base):
        __tablename__ = "todo_item"
        id: Mapped[int] = mapped_column(primary_key=True)
        todo_list_id: Mapped[int] = mapped_column(ForeignKey("todo_list.id"))
        position: Mapped[Optional[int]]
        todo_list: Mapped["TodoList"] = relationship()

    todo_items = ordered_list(TodoItem, scope="todo_list")

    todo_items.move_to_bottom(session, first_item)
    todo_items.move_higher(session, last_item)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import Connection, Integer, case, event, func, inspect, literal, null, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, object_session
from sqlalchemy.orm.attributes import set_committed_value

from listkeeper.core.locking import lock_member_rows, prepare_scope_lock
from listkeeper.core.scope import ResolvedScope, resolve_scope, sort_key
from listkeeper.errors import ConfigurationError, translate_store_errors
from listkeeper.schemas.list_options import ListOptions


logger = logging.getLogger(__name__)

ORDERED_LIST_ATTR = "__ordered_list__"
_FLUSH_BOOK_KEY = "listkeeper.flush_book"

Rows = List[Tuple[Any, int]]
Changes = Dict[Any, Optional[int]]


@dataclass
class _FlushBook:
    """
    Work done by hooks during one flush whose rows are not written yet.

    arrivals: items given a bottom position in a scope, INSERT/UPDATE pending.
    departures: ids whose row still sits in a scope it is leaving.
    written: id() of instances whose row this flush has already written.
    """

    arrivals: Dict[Any, List[Any]] = field(default_factory=dict)
    departures: Dict[Any, Set[Any]] = field(default_factory=dict)
    written: Set[int] = field(default_factory=set)


def _flush_book(session: Optional[Session]) -> _FlushBook:
    if session is None:
        return _FlushBook()
    return session.info.setdefault(_FLUSH_BOOK_KEY, _FlushBook())


def _discard_after_flush(session, flush_context):
    session.info.pop(_FLUSH_BOOK_KEY, None)


def _discard_after_rollback(session, previous_transaction):
    session.info.pop(_FLUSH_BOOK_KEY, None)


def _install_session_listeners() -> None:
    if not event.contains(Session, "after_flush", _discard_after_flush):
        event.listen(Session, "after_flush", _discard_after_flush)
        event.listen(Session, "after_soft_rollback", _discard_after_rollback)


class OrderedListManager:
    """Position maintenance for one mapped model."""

    def __init__(
        self,
        model: type,
        column: Optional[str] = None,
        scope: Any = None,
        *,
        lock_timeout_ms: Optional[int] = None,
        advisory_locks: Optional[bool] = None,
    ):
        raw = {"column": column, "scope": scope, "lock_timeout_ms": lock_timeout_ms, "advisory_locks": advisory_locks}
        try:
            self.options = ListOptions(**{key: value for key, value in raw.items() if value is not None})
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid ordered list options for {model!r}", {"errors": exc.errors()}) from exc

        try:
            self.mapper = inspect(model)
        except sa_exc.NoInspectionAvailable as exc:
            raise ConfigurationError(f"{model!r} is not a mapped class") from exc

        self.model = model
        self.position_attr, self.position_column = self._resolve_position(self.options.column)
        self.table = self.position_column.table

        primary_key = self.mapper.primary_key
        if len(primary_key) != 1 or primary_key[0].table is not self.table:
            raise ConfigurationError(
                f"{model.__name__} needs a single-column primary key in {self.table.name!r}",
                {"primary_key": [col.name for col in primary_key]},
            )
        self.pk_column = primary_key[0]
        self.pk_attr = self.mapper.get_property_by_column(self.pk_column).key

        self.scope: ResolvedScope = resolve_scope(self.mapper, self.table, self.options)
        self._hooks_registered = False

    def __repr__(self) -> str:
        return f"<OrderedListManager {self.model.__name__}.{self.position_attr} scope={self.options.scope!r}>"

    def _resolve_position(self, name: str):
        if name in self.mapper.column_attrs:
            prop = self.mapper.column_attrs[name]
            return prop.key, prop.columns[0]
        for prop in self.mapper.column_attrs:
            if prop.columns[0].name == name:
                return prop.key, prop.columns[0]
        raise ConfigurationError(
            f"{self.model.__name__} has no position column {name!r}",
            {"column": name},
        )

    # ------------------------------------------------------------------
    # Item state (no database access)
    # ------------------------------------------------------------------

    def scope_condition(self, item) -> Dict[str, Any]:
        """Column -> value equality map identifying the item's list."""
        return self.scope.values(lambda attr: getattr(item, attr))

    def in_list(self, item) -> bool:
        return inspect(item).has_identity and getattr(item, self.position_attr) is not None

    def current_position(self, item) -> int:
        return int(getattr(item, self.position_attr) or 0)

    def will_leave_list(self, item) -> bool:
        """True when the item is a member and unsaved scope-key changes move it elsewhere."""
        if not self.in_list(item):
            return False
        state = inspect(item)
        for attr in self.scope.key_attributes:
            history = state.attrs[attr].history
            if not history.has_changes():
                continue
            if not history.deleted or history.deleted[0] != getattr(item, attr):
                return True
        return self.pending_scope_condition(item) != self.scope_condition(item)

    def pending_scope_condition(self, item) -> Dict[str, Any]:
        """Like scope_condition, with relationship assignments the next flush will copy into the foreign keys."""
        values = self.scope_condition(item)
        state = inspect(item)
        for link in self.scope.links:
            history = state.attrs[link.relationship].history
            if not history.added and not history.deleted:
                continue
            parent = history.added[0] if history.added else None
            for column_key, remote_attr in link.pairs:
                values[column_key] = getattr(parent, remote_attr) if parent is not None else None
        return values

    def _identity(self, item) -> Any:
        return getattr(item, self.pk_attr)

    def _details(self, values: Dict[str, Any], ident: Any = None) -> Dict[str, Any]:
        details = {"model": self.model.__name__, "scope": values}
        if ident is not None:
            details["id"] = ident
        return details

    def _token(self, values: Dict[str, Any]) -> Tuple[Any, ...]:
        return (id(self), tuple(sorted(values.items(), key=lambda pair: pair[0])))

    # ------------------------------------------------------------------
    # Statements shared by the sync API and the asyncio repository
    # ------------------------------------------------------------------

    def _scope_where(self, item) -> List[Any]:
        return self.scope.clauses(self.scope_condition(item))

    def members_query(self, item):
        return (
            select(self.model)
            .where(*self._scope_where(item), self.position_column.is_not(None))
            .order_by(self.position_column.asc(), self.pk_column.asc())
        )

    def first_item_query(self, item):
        return self.members_query(item).limit(1)

    def last_item_query(self, item):
        return (
            select(self.model)
            .where(*self._scope_where(item), self.position_column.is_not(None))
            .order_by(self.position_column.desc(), self.pk_column.desc())
            .limit(1)
        )

    def last_position_query(self, item):
        return select(func.coalesce(func.max(self.position_column), 0)).where(*self._scope_where(item))

    def offset_query(self, item, offset: int):
        return (
            select(self.model)
            .where(*self._scope_where(item), self.position_column == self.current_position(item) + offset)
            .limit(1)
        )

    def higher_items_query(self, item):
        return self.members_query(item).where(self.position_column < self.current_position(item))

    def lower_items_query(self, item):
        return self.members_query(item).where(self.position_column > self.current_position(item))

    # ------------------------------------------------------------------
    # Read-only queries (no lock, read-committed)
    # ------------------------------------------------------------------

    def list_items(self, session: Session, item) -> List[Any]:
        return list(session.scalars(self.members_query(item)))

    def first_item(self, session: Session, item):
        return session.scalars(self.first_item_query(item)).first()

    top_item = first_item

    def last_item(self, session: Session, item):
        return session.scalars(self.last_item_query(item)).first()

    bottom_item = last_item

    def last_position(self, session: Session, item) -> int:
        return int(session.scalar(self.last_position_query(item)) or 0)

    bottom_position = last_position

    def is_first(self, item) -> bool:
        return self.in_list(item) and self.current_position(item) == 1

    is_top = is_first

    def is_last(self, session: Session, item) -> bool:
        return self.in_list(item) and self.current_position(item) == self.last_position(session, item)

    is_bottom = is_last

    def item_at_offset(self, session: Session, item, offset: int):
        if not self.in_list(item):
            return None
        return session.scalars(self.offset_query(item, offset)).first()

    def higher_item(self, session: Session, item):
        return self.item_at_offset(session, item, -1)

    previous_item = higher_item

    def lower_item(self, session: Session, item):
        return self.item_at_offset(session, item, 1)

    next_item = lower_item

    def higher_items(self, session: Session, item) -> List[Any]:
        if not self.in_list(item):
            return []
        return list(session.scalars(self.higher_items_query(item)))

    def lower_items(self, session: Session, item) -> List[Any]:
        if not self.in_list(item):
            return []
        return list(session.scalars(self.lower_items_query(item)))

    # ------------------------------------------------------------------
    # Locking and writing
    # ------------------------------------------------------------------

    def _lock(self, connection: Connection, values: Dict[str, Any]) -> Rows:
        prepare_scope_lock(
            connection,
            self.table.name,
            values,
            lock_timeout_ms=self.options.lock_timeout_ms,
            advisory=self.options.advisory_locks,
        )
        return lock_member_rows(connection, self.pk_column, self.position_column, self.scope.clauses(values))

    def _write(
        self,
        connection: Connection,
        rows: Rows,
        order: Sequence[Any],
        overrides: Optional[Changes] = None,
        skip: Sequence[Any] = (),
    ) -> Changes:
        """Renumber ``order`` as 1..N, writing only the rows whose position differs."""
        current = dict(rows)
        wanted: Changes = {ident: index for index, ident in enumerate(order, start=1)}
        if overrides:
            wanted.update(overrides)

        changes = {
            ident: position
            for ident, position in wanted.items()
            if ident not in skip and current.get(ident) != position
        }
        if not changes:
            return changes

        whens = [
            (self.pk_column == ident, null() if position is None else literal(position, Integer))
            for ident, position in changes.items()
        ]
        connection.execute(
            update(self.table)
            .where(self.pk_column.in_(list(changes)))
            .values({self.position_column: case(*whens, else_=self.position_column)})
        )
        return changes

    @contextmanager
    def _transaction(self, session: Session) -> Iterator[None]:
        # Join the caller's transaction through a SAVEPOINT so a failure only undoes this call
        if session.in_transaction():
            with session.begin_nested():
                yield
        else:
            with session.begin():
                yield

    def _sync_identity_map(self, session: Optional[Session], changes: Changes, *extra) -> None:
        """Push new positions into loaded instances so no reload is needed."""
        if not changes:
            return
        candidates = []
        written: Set[int] = set()
        if session is not None:
            for ident in changes:
                obj = session.identity_map.get(self.mapper.identity_key_from_primary_key([ident]))
                if obj is not None:
                    candidates.append(obj)
            book = session.info.get(_FLUSH_BOOK_KEY)
            if book is not None:
                written = book.written
        candidates.extend(obj for obj in extra if obj is not None and obj not in candidates)

        for obj in candidates:
            ident = self._identity(obj)
            if ident not in changes:
                continue
            # Unflushed position edits win; rows written earlier in this flush do not count
            if inspect(obj).attrs[self.position_attr].history.has_changes() and id(obj) not in written:
                continue
            set_committed_value(obj, self.position_attr, changes[ident])

    def _mutate(self, session: Session, item, operation: str, step: Callable[[Connection, Any, Rows], Tuple[Any, Changes]]):
        """Run one locked mutation for ``item`` and return the step's result."""
        details = self._details(self.scope_condition(item))
        with translate_store_errors(operation, details):
            with self._transaction(session):
                # Foreign keys behind a relationship scope are only synced by the flush
                session.flush()
                values = self.scope_condition(item)
                ident = self._identity(item)
                details.update(self._details(values, ident))
                connection = session.connection()
                rows = self._lock(connection, values)
                result, changes = step(connection, ident, rows)

        self._sync_identity_map(session, changes, item)
        logger.debug(
            "%s %s id=%s scope=%s -> %r (%d rows rewritten)",
            operation, self.model.__name__, ident, values, result, len(changes),
        )
        return result

    def lock_ordered_ids(self, session: Session, item) -> List[Any]:
        """
        Lock the item's list and return its member ids in order.

        Must be called inside a transaction the caller controls; the locks
        are held until that transaction ends.
        """
        details = self._details(self.scope_condition(item))
        with translate_store_errors("lock_ordered_ids", details):
            session.flush()
            values = self.scope_condition(item)
            details.update(self._details(values))
            rows = self._lock(session.connection(), values)
        return [ident for ident, _position in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, session: Session, item) -> bool:
        """Put the item at the bottom of its list (moving it there if it is already a member)."""
        state = inspect(item)
        if not state.has_identity:
            # before_insert places it at the bottom during the flush
            if state.transient:
                session.add(item)
            setattr(item, self.position_attr, None)
            return self._mutate(session, item, "append", lambda connection, ident, rows: (True, {}))

        def step(connection, ident, rows):
            order = [member for member, _ in rows if member != ident]
            order.append(ident)
            return True, self._write(connection, rows, order)

        return self._mutate(session, item, "append", step)

    add_to_list = append

    def insert_at(self, session: Session, item, position: int = 1) -> int:
        """
        Move or insert the item at ``position`` and return where it ended up.

        Out of range positions are clamped: below 1 becomes 1, past the end
        makes the item last.
        """
        state = inspect(item)
        if state.transient:
            session.add(item)

        def step(connection, ident, rows):
            order = [member for member, _ in rows if member != ident]
            target = min(max(int(position), 1), len(order) + 1)
            order.insert(target - 1, ident)
            return target, self._write(connection, rows, order)

        return self._mutate(session, item, "insert_at", step)

    def _move(self, session: Session, item, operation: str, reorder: Callable[[List[Any], int], bool]) -> bool:
        if not self.in_list(item):
            return False

        def step(connection, ident, rows):
            order = [member for member, _ in rows]
            if ident not in order:
                return False, {}
            if not reorder(order, order.index(ident)):
                # Already in place
                return True, {}
            return True, self._write(connection, rows, order)

        return self._mutate(session, item, operation, step)

    def move_higher(self, session: Session, item) -> bool:
        """Swap with the item just above. True when already first."""

        def reorder(order, index):
            if index == 0:
                return False
            order[index - 1], order[index] = order[index], order[index - 1]
            return True

        return self._move(session, item, "move_higher", reorder)

    move_up = move_higher

    def move_lower(self, session: Session, item) -> bool:
        """Swap with the item just below. True when already last."""

        def reorder(order, index):
            if index == len(order) - 1:
                return False
            order[index + 1], order[index] = order[index], order[index + 1]
            return True

        return self._move(session, item, "move_lower", reorder)

    move_down = move_lower

    def move_to_top(self, session: Session, item) -> bool:
        def reorder(order, index):
            if index == 0:
                return False
            order.insert(0, order.pop(index))
            return True

        return self._move(session, item, "move_to_top", reorder)

    def move_to_bottom(self, session: Session, item) -> bool:
        def reorder(order, index):
            if index == len(order) - 1:
                return False
            order.append(order.pop(index))
            return True

        return self._move(session, item, "move_to_bottom", reorder)

    def remove_from_list(self, session: Session, item) -> bool:
        """Null the item's position and close the gap. False when it was not a member."""
        if not self.in_list(item):
            return False

        def step(connection, ident, rows):
            order = [member for member, _ in rows]
            if ident not in order:
                return False, {}
            order.remove(ident)
            return True, self._write(connection, rows, order, overrides={ident: None})

        return self._mutate(session, item, "remove_from_list", step)

    def decrement_lower_items(self, session: Session, item) -> bool:
        """
        Close the gap below the item without touching the item itself.

        Leaves two rows sharing the item's position until the item is
        deleted; only meant to run right before a delete.
        """
        if not self.in_list(item):
            return False

        def step(connection, ident, rows):
            order = [member for member, _ in rows if member != ident]
            return True, self._write(connection, rows, order, skip=(ident,))

        return self._mutate(session, item, "decrement_lower_items", step)

    # ------------------------------------------------------------------
    # Lifecycle hooks (run inside Session.flush on the flush connection)
    # ------------------------------------------------------------------

    def register_hooks(self) -> None:
        """Attach before-create / before-update / before-delete handling to the model."""
        if self._hooks_registered:
            return
        for name, fn in self._hook_table():
            event.listen(self.model, name, fn, propagate=True)
        _install_session_listeners()
        self._hooks_registered = True
        logger.info("Ordered list hooks registered for %s.%s", self.model.__name__, self.position_attr)

    def remove_hooks(self) -> None:
        if not self._hooks_registered:
            return
        for name, fn in self._hook_table():
            event.remove(self.model, name, fn)
        self._hooks_registered = False

    def _hook_table(self):
        return [
            ("before_insert", self._before_insert),
            ("before_update", self._before_update),
            ("before_delete", self._before_delete),
            ("after_insert", self._after_write),
            ("after_update", self._after_write),
            ("after_delete", self._after_write),
        ]

    def _stored_state(self, connection: Connection, ident: Any) -> Optional[Tuple[Optional[int], Dict[str, Any]]]:
        """Position and scope values as currently stored for ``ident``."""
        columns = [self.position_column] + [term.column for term in self.scope.terms if term.attribute is not None]
        row = connection.execute(select(*columns).where(self.pk_column == ident)).mappings().one_or_none()
        if row is None:
            return None
        values = {
            term.column.key: row[term.column] if term.attribute is not None else term.literal
            for term in self.scope.terms
        }
        return row[self.position_column], values

    def _lock_pending(self, connection: Connection, book: _FlushBook, values: Dict[str, Any]) -> Rows:
        departed = book.departures.get(self._token(values), set())
        return [row for row in self._lock(connection, values) if row[0] not in departed]

    def _reserve_bottom(self, book: _FlushBook, values: Dict[str, Any], rows: Rows, target) -> int:
        arrivals = book.arrivals.setdefault(self._token(values), [])
        position = len(rows) + len(arrivals) + 1
        arrivals.append(target)
        return position

    def _close_gap(self, connection: Connection, book: _FlushBook, values: Dict[str, Any], rows: Rows, ident: Any) -> Changes:
        token = self._token(values)
        order = [member for member, _ in rows if member != ident]
        changes = self._write(connection, rows, order, skip=(ident,))
        if any(member == ident for member, _ in rows):
            # Items appended earlier in this flush sit below everyone
            for pending in book.arrivals.get(token, []):
                setattr(pending, self.position_attr, getattr(pending, self.position_attr) - 1)
        book.departures.setdefault(token, set()).add(ident)
        return changes

    def _before_insert(self, mapper, connection, target) -> None:
        if getattr(target, self.position_attr) is not None:
            return
        values = self.scope_condition(target)
        book = _flush_book(object_session(target))
        with translate_store_errors("append", self._details(values)):
            rows = self._lock_pending(connection, book, values)
            position = self._reserve_bottom(book, values, rows, target)
        setattr(target, self.position_attr, position)
        logger.debug("append %s scope=%s -> %d", self.model.__name__, values, position)

    def _before_update(self, mapper, connection, target) -> None:
        state = inspect(target)
        if not any(state.attrs[attr].history.has_changes() for attr in self.scope.key_attributes):
            return
        ident = self._identity(target)
        stored = self._stored_state(connection, ident)
        if stored is None:
            return
        old_position, old_values = stored
        new_values = self.scope_condition(target)
        if old_position is None or old_values == new_values:
            return
        self.handle_rescope(connection, target, old_values, new_values)

    def handle_rescope(self, connection: Connection, target, old_values: Dict[str, Any], new_values: Dict[str, Any]) -> int:
        """
        Leave the old list (closing the gap) and join the bottom of the new one.

        Runs on the flush connection right before the item's UPDATE; both
        scopes are locked in a fixed order so opposite moves cannot deadlock.
        Returns the new position, which is also set on ``target``.
        """
        session = object_session(target)
        book = _flush_book(session)
        ident = self._identity(target)
        details = self._details(old_values, ident)
        details["new_scope"] = new_values

        with translate_store_errors("rescope", details):
            locked = {}
            for values in sorted([old_values, new_values], key=sort_key):
                locked[self._token(values)] = self._lock_pending(connection, book, values)
            changes = self._close_gap(connection, book, old_values, locked[self._token(old_values)], ident)
            position = self._reserve_bottom(book, new_values, locked[self._token(new_values)], target)

        setattr(target, self.position_attr, position)
        self._sync_identity_map(session, changes)
        logger.debug(
            "rescope %s id=%s %s -> %s at %d (%d rows rewritten)",
            self.model.__name__, ident, old_values, new_values, position, len(changes),
        )
        return position

    def _before_delete(self, mapper, connection, target) -> None:
        ident = self._identity(target)
        stored = self._stored_state(connection, ident)
        if stored is None or stored[0] is None:
            return
        _position, values = stored
        session = object_session(target)
        book = _flush_book(session)
        with translate_store_errors("decrement_lower_items", self._details(values, ident)):
            rows = self._lock_pending(connection, book, values)
            changes = self._close_gap(connection, book, values, rows, ident)
        self._sync_identity_map(session, changes)

    def _after_write(self, mapper, connection, target) -> None:
        session = object_session(target)
        if session is None:
            return
        book = _flush_book(session)
        book.written.add(id(target))
        for pending in book.arrivals.values():
            pending[:] = [other for other in pending if other is not target]
        ident = self._identity(target)
        for departed in book.departures.values():
            departed.discard(ident)


def ordered_list(model: type, column: Optional[str] = None, scope: Any = None, **kwargs) -> OrderedListManager:
    """Configure ``model`` as an ordered list, register its hooks and return the manager."""
    manager = OrderedListManager(model, column=column, scope=scope, **kwargs)
    manager.register_hooks()
    setattr(model, ORDERED_LIST_ATTR, manager)
    return manager


def manager_for(model_or_item: Any) -> OrderedListManager:
    model = model_or_item if isinstance(model_or_item, type) else type(model_or_item)
    manager = getattr(model, ORDERED_LIST_ATTR, None)
    if manager is None:
        raise ConfigurationError(f"{model.__name__} is not configured as an ordered list")
    return manager
