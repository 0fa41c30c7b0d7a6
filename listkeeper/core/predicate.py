"""
Predicate scope templates.

A template is a conjunction of equality clauses, each comparing a column
with either the item's own attribute or a literal:

    "parent_id = {parent_id}"
    "user_id = {user_id} AND completed = 0"
    "board_id = {board_id} AND kind = 'card' AND archived = FALSE"

Nothing else is accepted; a template is never evaluated as code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from listkeeper.errors import ConfigurationError


_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<placeholder>\{\s*(?P<ref>[A-Za-z_]\w*)\s*\})
      | (?P<string>'(?:[^']|'')*')
      | (?P<number>-?\d+)
      | (?P<word>[A-Za-z_]\w*)
      | (?P<eq>=)
    )""",
    re.VERBOSE,
)

_KEYWORD_LITERALS = {"NULL": None, "TRUE": True, "FALSE": False}


@dataclass(frozen=True)
class Clause:
    column: str
    attribute: Optional[str] = None
    value: Any = None

    @property
    def is_placeholder(self) -> bool:
        return self.attribute is not None


@dataclass(frozen=True)
class PredicateTemplate:
    source: str
    clauses: Tuple[Clause, ...]

    @property
    def attributes(self) -> List[str]:
        """Item attributes the template reads; changing any of them re-scopes the item."""
        seen: List[str] = []
        for clause in self.clauses:
            if clause.is_placeholder and clause.attribute not in seen:
                seen.append(clause.attribute)
        return seen

    @property
    def columns(self) -> List[str]:
        return [clause.column for clause in self.clauses]

    def evaluate(self, read: Callable[[str], Any]) -> Dict[str, Any]:
        """Return column -> value, reading placeholders through ``read``."""
        return {
            clause.column: read(clause.attribute) if clause.is_placeholder else clause.value
            for clause in self.clauses
        }


def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = source.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ConfigurationError(
                f"Unsupported scope template near {text[pos:pos + 20]!r}",
                {"template": source},
            )
        kind = match.lastgroup
        value = match.group("ref") if kind == "placeholder" else match.group(kind)
        tokens.append((kind, value))
        pos = match.end()
    return tokens


def _literal(kind: str, value: str) -> Any:
    if kind == "number":
        return int(value)
    if kind == "string":
        return value[1:-1].replace("''", "'")
    return _KEYWORD_LITERALS[value.upper()]


def parse_template(source: str) -> PredicateTemplate:
    """Parse a scope template, raising ConfigurationError for anything outside the grammar."""
    tokens = _tokenize(source)
    if not tokens:
        raise ConfigurationError("Scope template is empty", {"template": source})

    clauses: List[Clause] = []
    i = 0
    while True:
        # column = operand
        window = tokens[i:i + 3]
        if len(window) < 3 or window[0][0] != "word" or window[1][0] != "eq":
            raise ConfigurationError(
                "Scope template clauses must look like 'column = {attribute}' or 'column = literal'",
                {"template": source},
            )
        column = window[0][1]
        if column.upper() in _KEYWORD_LITERALS or column.upper() == "AND":
            raise ConfigurationError(f"{column!r} is not a column name", {"template": source})

        kind, value = window[2]
        if kind == "placeholder":
            clause = Clause(column=column, attribute=value)
        elif kind in ("number", "string") or (kind == "word" and value.upper() in _KEYWORD_LITERALS):
            clause = Clause(column=column, value=_literal(kind, value))
        else:
            raise ConfigurationError(
                f"Right-hand side of {column!r} must be a placeholder or a literal",
                {"template": source},
            )

        if any(existing.column == column for existing in clauses):
            raise ConfigurationError(f"Column {column!r} appears twice", {"template": source})
        clauses.append(clause)
        i += 3

        if i == len(tokens):
            break
        if tokens[i][0] != "word" or tokens[i][1].upper() != "AND":
            raise ConfigurationError("Scope template clauses must be joined with AND", {"template": source})
        i += 1

    return PredicateTemplate(source=source, clauses=tuple(clauses))
