"""
Scope resolution.

Turns the configured ``scope`` option into concrete columns of the mapped
table once, when the list is configured. Per-call work is then reduced to
reading attribute values off the item.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Column, Table
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Mapper, RelationshipDirection

from listkeeper.core.predicate import PredicateTemplate, parse_template
from listkeeper.errors import ConfigurationError
from listkeeper.schemas.list_options import ListOptions


@dataclass(frozen=True)
class ScopeTerm:
    """One equality in the scope condition: column = item attribute (or literal)."""

    column: Column
    attribute: Optional[str] = None
    literal: Any = None


@dataclass(frozen=True)
class ScopeLink:
    """A many-to-one relationship feeding scope columns: (column key, attribute on the related object) pairs."""

    relationship: str
    pairs: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class ResolvedScope:
    terms: Tuple[ScopeTerm, ...]
    template: Optional[PredicateTemplate] = None
    links: Tuple[ScopeLink, ...] = ()

    @property
    def is_global(self) -> bool:
        return not self.terms

    @property
    def key_attributes(self) -> Tuple[str, ...]:
        """Attributes whose change moves an item to another list."""
        return tuple(term.attribute for term in self.terms if term.attribute is not None)

    def values(self, read: Callable[[str], Any]) -> Dict[str, Any]:
        """Column name -> value for the list the item (as seen through ``read``) belongs to."""
        if self.template is not None:
            return self.template.evaluate(read)
        return {
            term.column.key: read(term.attribute) if term.attribute is not None else term.literal
            for term in self.terms
        }

    def clauses(self, values: Dict[str, Any]) -> List[Any]:
        """SQL equality clauses; a None value is its own list (IS NULL)."""
        clauses = []
        for term in self.terms:
            value = values[term.column.key]
            clauses.append(term.column.is_(None) if value is None else term.column == value)
        return clauses


def _column_for(mapper: Mapper, table: Table, key: str, option: str) -> Column:
    prop = mapper.column_attrs[key]
    column = prop.columns[0]
    if column.table is not table:
        raise ConfigurationError(
            f"Scope attribute {key!r} is not stored in table {table.name!r}",
            {"scope": option},
        )
    return column


def _relationship_keys(mapper: Mapper, name: str) -> Optional[Tuple[List[str], ScopeLink]]:
    try:
        relationships = mapper.relationships
    except sa_exc.InvalidRequestError as exc:
        raise ConfigurationError(f"Mappers could not be configured: {exc}", {"scope": name}) from exc

    if name not in relationships:
        return None

    rel = relationships[name]
    if rel.direction is not RelationshipDirection.MANYTOONE:
        raise ConfigurationError(
            "Only many-to-one (belongs-to) relationships can be used as a scope",
            {"scope": name, "direction": rel.direction.name},
        )

    keys = []
    pairs = []
    for local, remote in rel.local_remote_pairs:
        keys.append(mapper.get_property_by_column(local).key)
        pairs.append((local.key, rel.mapper.get_property_by_column(remote).key))
    foreign_type = rel.info.get("foreign_type")
    if foreign_type is None and rel.info.get("polymorphic"):
        foreign_type = f"{name}_type"
    if foreign_type is not None:
        if foreign_type not in mapper.column_attrs:
            raise ConfigurationError(
                f"Polymorphic relationship {name!r} has no type column {foreign_type!r}",
                {"scope": name},
            )
        keys.append(foreign_type)
    return keys, ScopeLink(relationship=name, pairs=tuple(pairs))


def _attribute_keys(mapper: Mapper, name: str) -> Tuple[List[str], Optional[ScopeLink]]:
    found = _relationship_keys(mapper, name)
    if found is not None:
        return found
    if name in mapper.column_attrs:
        return [name], None
    if not name.endswith("_id") and f"{name}_id" in mapper.column_attrs:
        return [f"{name}_id"], None
    raise ConfigurationError(
        f"Unknown scope attribute {name!r} on {mapper.class_.__name__}",
        {"scope": name},
    )


def _resolve_template(mapper: Mapper, table: Table, source: str) -> ResolvedScope:
    template = parse_template(source)
    for column in template.columns:
        if column not in table.c:
            raise ConfigurationError(
                f"Scope template references unknown column {column!r}",
                {"template": source},
            )
    for attribute in template.attributes:
        if attribute not in mapper.column_attrs:
            raise ConfigurationError(
                f"Scope template references unknown attribute {attribute!r}",
                {"template": source},
            )
    terms = tuple(
        ScopeTerm(column=table.c[clause.column], attribute=clause.attribute, literal=clause.value)
        for clause in template.clauses
    )
    return ResolvedScope(terms=terms, template=template)


def resolve_scope(mapper: Mapper, table: Table, options: ListOptions) -> ResolvedScope:
    """Resolve ``options.scope`` against ``mapper``; raises ConfigurationError on anything unknown."""
    if options.scope is None:
        return ResolvedScope(terms=())
    if options.is_template:
        return _resolve_template(mapper, table, options.scope)

    keys: List[str] = []
    links: List[ScopeLink] = []
    for name in options.scope_names():
        names, link = _attribute_keys(mapper, name)
        if link is not None:
            links.append(link)
        for key in names:
            if key not in keys:
                keys.append(key)

    terms = tuple(
        ScopeTerm(column=_column_for(mapper, table, key, str(options.scope)), attribute=key)
        for key in keys
    )
    return ResolvedScope(terms=terms, links=tuple(links))


def sort_key(values: Dict[str, Any]) -> Sequence[str]:
    """Deterministic ordering between two scopes, used to lock them in a fixed order."""
    return [f"{column}={values[column]!r}" for column in sorted(values)]
