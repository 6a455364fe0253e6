"""Filter expressions for record-store queries.

Each node compiles to an Airtable ``filterByFormula`` string and can also be
evaluated against a record's fields in-process, which is how the SQL-backed
store answers queries.

Usage::

    formula = And(Has("Contact", contact_id), Or(Eq("Status", "Active"), Blank("Status")))
    formula.compile()   # 'AND(FIND("rec1", ARRAYJOIN({Contact})) > 0, OR(...))'
    formula.matches({"Contact": ["rec1"]})   # True
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from roster.errors import RecordSchemaMismatch
from roster.relations import normalize_relation


def quote(value: str) -> str:
    """Quote a value for use inside a formula string literal."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def field_ref(name: str) -> str:
    return "{" + name.replace("}", "") + "}"


def _values(fields: Mapping[str, Any], name: str) -> tuple[str, ...]:
    try:
        return normalize_relation(name, fields.get(name)).ids
    except RecordSchemaMismatch:
        return ()


class Formula:
    def compile(self) -> str:
        raise NotImplementedError

    def matches(self, fields: Mapping[str, Any]) -> bool:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.compile()


@dataclass(frozen=True)
class Eq(Formula):
    """Field equals value; a list-valued field matches if any element does."""
    field: str
    value: str

    def compile(self) -> str:
        return f"{field_ref(self.field)}={quote(self.value)}"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return str(self.value) in _values(fields, self.field)


@dataclass(frozen=True)
class Has(Formula):
    """Linked-record field contains the id, whatever shape the field has."""
    field: str
    value: str

    def compile(self) -> str:
        return f"FIND({quote(self.value)}, ARRAYJOIN({field_ref(self.field)})) > 0"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return str(self.value) in _values(fields, self.field)


@dataclass(frozen=True)
class EqIgnoreCase(Formula):
    field: str
    value: str

    def compile(self) -> str:
        return f"LOWER({field_ref(self.field)})={quote(self.value.lower())}"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        target = self.value.lower()
        return any(v.lower() == target for v in _values(fields, self.field))


@dataclass(frozen=True)
class Blank(Formula):
    field: str

    def compile(self) -> str:
        return f'{field_ref(self.field)}=""'

    def matches(self, fields: Mapping[str, Any]) -> bool:
        value = fields.get(self.field)
        if value is None:
            return True
        if isinstance(value, str):
            return not value.strip()
        if isinstance(value, (list, tuple)):
            return len(value) == 0
        return False


class _Group(Formula):
    op = ""

    def __init__(self, *parts: Formula):
        if not parts:
            raise ValueError(f"{self.op} needs at least one clause")
        self.parts = parts

    def compile(self) -> str:
        if len(self.parts) == 1:
            return self.parts[0].compile()
        return f"{self.op}({', '.join(p.compile() for p in self.parts)})"

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and self.parts == other.parts  # type: ignore[attr-defined]

    def __hash__(self) -> int:
        return hash((self.op, self.parts))

    def __repr__(self) -> str:
        return f"{type(self).__name__}{self.parts!r}"


class And(_Group):
    op = "AND"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return all(p.matches(fields) for p in self.parts)


class Or(_Group):
    op = "OR"

    def matches(self, fields: Mapping[str, Any]) -> bool:
        return any(p.matches(fields) for p in self.parts)


def active_or_blank(field: str = "Status") -> Formula:
    return Or(Eq(field, "Active"), Blank(field))


def has_any(field: str, values: list[str] | tuple[str, ...]) -> Formula:
    return Or(*(Has(field, v) for v in values))
