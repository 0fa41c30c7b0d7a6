"""
SQLAlchemy declarative base.

Models that keep an ordered list can inherit from this Base, or from any
other declarative base of the host application.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for SQLAlchemy models.

    This allows SQLAlchemy to track and manage all models together.
    """
    pass
