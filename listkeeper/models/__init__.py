"""
Models package.

Mixins for host models that keep an ordered list.
"""

from listkeeper.models.base_model import HasPosition, HasScopeKey, OrderedListItem, PositionedModel

__all__ = [
    "HasPosition",
    "HasScopeKey",
    "OrderedListItem",
    "PositionedModel",
]
