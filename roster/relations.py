"""Normalization of relationship and status fields.

Linked-record fields in the store show up as a bare id, a list of ids, a list
of ``{"id": ...}`` objects, or not at all, depending on record age. Every
reader goes through :func:`read_relation`, which folds them into one of three
shapes: ``Absent``, ``Scalar`` or ``Many``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

from roster.errors import RecordSchemaMismatch

ACTIVE = "Active"
INACTIVE = "Inactive"
INVITED = "Invited"

STATUS_FIELDS = ("Status", "status")


@dataclass(frozen=True)
class Absent:
    @property
    def ids(self) -> tuple[str, ...]:
        return ()

    @property
    def first(self) -> str | None:
        return None

    def contains(self, record_id: str) -> bool:
        return False


@dataclass(frozen=True)
class Scalar:
    id: str

    @property
    def ids(self) -> tuple[str, ...]:
        return (self.id,)

    @property
    def first(self) -> str | None:
        return self.id

    def contains(self, record_id: str) -> bool:
        return self.id == record_id


@dataclass(frozen=True)
class Many:
    items: tuple[str, ...]

    @property
    def ids(self) -> tuple[str, ...]:
        return self.items

    @property
    def first(self) -> str | None:
        return self.items[0] if self.items else None

    def contains(self, record_id: str) -> bool:
        return record_id in self.items


Relation = Union[Absent, Scalar, Many]

ABSENT = Absent()


def _coerce_id(field: str, value: Any) -> str | None:
    # bool is an int subclass; a checkbox is never a record id
    if isinstance(value, bool):
        raise RecordSchemaMismatch(field, value)
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Mapping):
        inner = value.get("id")
        if isinstance(inner, str) and inner.strip():
            return inner.strip()
    raise RecordSchemaMismatch(field, value)


def normalize_relation(field: str, value: Any) -> Relation:
    """Fold one raw field value into a relation shape."""
    if value is None:
        return ABSENT
    if isinstance(value, (list, tuple)):
        ids = tuple(i for i in (_coerce_id(field, v) for v in value if v is not None) if i)
        return Many(ids)
    coerced = _coerce_id(field, value)
    return Scalar(coerced) if coerced else ABSENT


def read_relation(fields: Mapping[str, Any], field: str) -> Relation:
    """Read ``field`` from a record's fields as a relation."""
    return normalize_relation(field, fields.get(field))


def read_first_relation(fields: Mapping[str, Any], names: Iterable[str]) -> tuple[str | None, Relation]:
    """Return the first field in ``names`` holding at least one id.

    ``names`` is walked in the given order, so the result never depends on the
    record's own field ordering.
    """
    for name in names:
        rel = read_relation(fields, name)
        if rel.ids:
            return name, rel
    return None, ABSENT


def relation_ids(fields: Mapping[str, Any], names: Iterable[str]) -> tuple[str, ...]:
    """Union of ids across several field-name variants, first-seen order."""
    seen: dict[str, None] = {}
    for name in names:
        for rid in read_relation(fields, name).ids:
            seen.setdefault(rid, None)
    return tuple(seen)


def read_status(fields: Mapping[str, Any]) -> str | None:
    """Return the record's lifecycle status, or None when the field is missing."""
    for name in STATUS_FIELDS:
        raw = fields.get(name)
        if isinstance(raw, (list, tuple)):
            raw = raw[0] if raw else None
        if isinstance(raw, str) and raw.strip():
            return raw.strip().capitalize()
    return None


def is_active(fields: Mapping[str, Any]) -> bool:
    """Legacy records without a status count as Active."""
    status = read_status(fields)
    return status is None or status == ACTIVE


def read_text(fields: Mapping[str, Any], *names: str, default: str = "") -> str:
    """First non-empty text value among ``names``; lookup fields arrive as lists."""
    for name in names:
        raw = fields.get(name)
        if isinstance(raw, (list, tuple)):
            raw = next((v for v in raw if isinstance(v, str) and v.strip()), None)
        if isinstance(raw, str) and raw.strip():
            return raw.strip()
    return default
