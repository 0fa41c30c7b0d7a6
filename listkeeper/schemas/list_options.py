"""
Pydantic schema for per-model ordered list options.
"""

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from listkeeper.core.config import settings


class ListOptions(BaseModel):
    """Validated configuration surface of an ordered list."""

    column: str = Field(default_factory=lambda: settings.DEFAULT_POSITION_COLUMN, min_length=1)
    # None / "" / [] -> one global list
    # "parent" / "parent_id" -> attribute or many-to-one relationship
    # ["parent_id", "parent_type"] -> composite key
    # "parent_id = {parent_id} AND done = 0" -> predicate template
    scope: Union[None, str, List[str]] = None
    lock_timeout_ms: int = Field(default_factory=lambda: settings.LOCK_TIMEOUT_MS, ge=0)
    advisory_locks: bool = Field(default_factory=lambda: settings.ADVISORY_LOCKS)

    model_config = ConfigDict(frozen=True)

    @field_validator("column")
    @classmethod
    def strip_column(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("column must not be blank")
        return value

    @field_validator("scope")
    @classmethod
    def normalize_scope(cls, value: Union[None, str, List[str]]) -> Union[None, str, List[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            return value or None
        names = [name.strip() for name in value]
        if any(not name for name in names):
            raise ValueError("scope attribute names must not be blank")
        if len(set(names)) != len(names):
            raise ValueError("scope attribute names must be unique")
        return names or None

    @property
    def is_template(self) -> bool:
        return isinstance(self.scope, str) and "=" in self.scope

    def scope_names(self) -> Optional[List[str]]:
        """Attribute names for non-template scopes."""
        if self.scope is None or self.is_template:
            return None
        if isinstance(self.scope, str):
            return [self.scope]
        return list(self.scope)
