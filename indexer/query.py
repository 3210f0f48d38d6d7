"""Filter conditions for document lookups.

Search stages describe what they want as a small condition tree
(``Contains`` leaves combined with ``AllOf`` / ``AnyOf``) wrapped in a
``DocumentFilter``. Store adapters compile the tree into their own query
language; the SQLite adapter turns it into a parameterised WHERE clause.
"""

from dataclasses import dataclass, replace
from typing import List, Optional, Tuple, Union

from .models import DocumentType

SEARCHABLE_FIELDS = ("title", "content", "url")


@dataclass(frozen=True)
class Contains:
    """Case-insensitive literal substring match of ``term`` in any of ``fields``."""
    term: str
    fields: Tuple[str, ...] = ("title", "content")

    def __post_init__(self):
        unknown = [f for f in self.fields if f not in SEARCHABLE_FIELDS]
        if unknown:
            raise ValueError(f"Unsupported search fields: {unknown}")
        if not self.fields:
            raise ValueError("Contains needs at least one field")


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    conditions: Tuple["Condition", ...]


Condition = Union[Contains, AllOf, AnyOf]


def all_of(conditions: List[Condition]) -> AllOf:
    return AllOf(tuple(conditions))


def any_of(conditions: List[Condition]) -> AnyOf:
    return AnyOf(tuple(conditions))


@dataclass(frozen=True)
class DocumentFilter:
    """Restriction applied to every document query.

    ``is_active=None`` disables the soft-delete filter, ``type=None``
    matches every content type.
    """
    is_active: Optional[bool] = True
    type: Optional[DocumentType] = None
    match: Optional[Condition] = None

    def with_match(self, match: Optional[Condition]) -> "DocumentFilter":
        return replace(self, match=match)

    def without_type(self) -> "DocumentFilter":
        return replace(self, type=None)


def compile_condition(condition: Condition, function_name: str = "icontains") -> Tuple[str, list]:
    """Compile a condition tree into an SQL fragment and its parameters.

    ``function_name`` is the SQL function implementing case-insensitive
    containment; the adapter registers it on its connection.
    """
    if isinstance(condition, Contains):
        parts = [f"{function_name}({column}, ?)" for column in condition.fields]
        return "(" + " OR ".join(parts) + ")", [condition.term] * len(parts)

    if isinstance(condition, (AllOf, AnyOf)):
        if not condition.conditions:
            # Empty AND is true, empty OR is false
            return ("1" if isinstance(condition, AllOf) else "0"), []
        joiner = " AND " if isinstance(condition, AllOf) else " OR "
        fragments = []
        params: list = []
        for child in condition.conditions:
            sql, child_params = compile_condition(child, function_name)
            fragments.append(sql)
            params.extend(child_params)
        return "(" + joiner.join(fragments) + ")", params

    raise TypeError(f"Unsupported condition: {condition!r}")


def compile_filter(doc_filter: DocumentFilter, function_name: str = "icontains") -> Tuple[str, list]:
    """Compile a ``DocumentFilter`` into a WHERE clause (without the keyword)."""
    clauses: List[str] = []
    params: list = []

    if doc_filter.is_active is not None:
        clauses.append("is_active = ?")
        params.append(1 if doc_filter.is_active else 0)

    if doc_filter.type is not None:
        clauses.append("type = ?")
        params.append(DocumentType(doc_filter.type).value)

    if doc_filter.match is not None:
        sql, match_params = compile_condition(doc_filter.match, function_name)
        clauses.append(sql)
        params.extend(match_params)

    return (" AND ".join(clauses) if clauses else "1"), params
