"""
Mixins for models that keep an ordered list.

- PositionedModel adds the nullable ``position`` column
- OrderedListItem gives instances the list operations of their manager,
  using the session the instance is attached to
- HasPosition / HasScopeKey describe what the list operations need from a
  model, for type checkers and isinstance checks in host code. The manager
  does not consult them; it reads the configured columns directly
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, Session, mapped_column, object_session

from listkeeper.core.manager import manager_for
from listkeeper.errors import ListKeeperError


@runtime_checkable
class HasPosition(Protocol):
    """Interface for models using the default position column."""

    position: Optional[int]


@runtime_checkable
class HasScopeKey(Protocol):
    """Interface for models that can name the list they belong to."""

    def scope_key(self) -> Dict[str, Any]:
        ...


class PositionedModel:
    """
    Declarative mixin with the position column.

    NULL means the row is not in any list.
    """

    position: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )


class OrderedListItem:
    """Instance-level list operations for models configured with ordered_list()."""

    def _list_session(self) -> Session:
        session = object_session(self)
        if session is None:
            raise ListKeeperError(
                f"{type(self).__name__} must be attached to a session for list operations",
            )
        return session

    @property
    def list_manager(self):
        return manager_for(type(self))

    def scope_key(self) -> Dict[str, Any]:
        return self.list_manager.scope_condition(self)

    def in_list(self) -> bool:
        return self.list_manager.in_list(self)

    def current_position(self) -> int:
        return self.list_manager.current_position(self)

    def is_first(self) -> bool:
        return self.list_manager.is_first(self)

    def is_last(self) -> bool:
        return self.list_manager.is_last(self._list_session(), self)

    def will_leave_list(self) -> bool:
        return self.list_manager.will_leave_list(self)

    def first_item(self) -> Any:
        return self.list_manager.first_item(self._list_session(), self)

    def last_item(self) -> Any:
        return self.list_manager.last_item(self._list_session(), self)

    def higher_item(self) -> Any:
        return self.list_manager.higher_item(self._list_session(), self)

    def lower_item(self) -> Any:
        return self.list_manager.lower_item(self._list_session(), self)

    def higher_items(self) -> List[Any]:
        return self.list_manager.higher_items(self._list_session(), self)

    def lower_items(self) -> List[Any]:
        return self.list_manager.lower_items(self._list_session(), self)

    def add_to_list(self) -> bool:
        return self.list_manager.append(self._list_session(), self)

    def insert_at(self, position: int = 1) -> int:
        return self.list_manager.insert_at(self._list_session(), self, position)

    def move_higher(self) -> bool:
        return self.list_manager.move_higher(self._list_session(), self)

    def move_lower(self) -> bool:
        return self.list_manager.move_lower(self._list_session(), self)

    def move_to_top(self) -> bool:
        return self.list_manager.move_to_top(self._list_session(), self)

    def move_to_bottom(self) -> bool:
        return self.list_manager.move_to_bottom(self._list_session(), self)

    def remove_from_list(self) -> bool:
        return self.list_manager.remove_from_list(self._list_session(), self)
