"""
Schemas package.

Pydantic models for validating configuration.
"""

from listkeeper.schemas.list_options import ListOptions

__all__ = ["ListOptions"]
