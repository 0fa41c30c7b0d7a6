"""
listkeeper - dense, gapless ordered lists on SQLAlchemy models.

Import the public API from here.
"""

from listkeeper.core.manager import OrderedListManager, manager_for, ordered_list
from listkeeper.errors import ConfigurationError, ConstraintError, ContentionError, ListKeeperError
from listkeeper.models.base_model import HasPosition, HasScopeKey, OrderedListItem, PositionedModel
from listkeeper.repositories.list_repository import ListRepository
from listkeeper.services.ordering_service import OrderingService

__version__ = "0.1.0"

__all__ = [
    "OrderedListManager",
    "ordered_list",
    "manager_for",
    "OrderedListItem",
    "PositionedModel",
    "HasPosition",
    "HasScopeKey",
    "ListRepository",
    "OrderingService",
    "ListKeeperError",
    "ConfigurationError",
    "ContentionError",
    "ConstraintError",
]
