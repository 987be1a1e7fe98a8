"""
Filter and sort grammar shared by metadata listing and counter rules.

A filter is a mapping from field name to either a literal (equality) or an
operator document::

    {"status": "active", "priority": {"$gte": 3}, "tags": {"$in": ["a", "b"]}}

Supported operators: $eq, $ne, $gt, $gte, $lt, $lte, $in, $nin, $exists.
Array-valued fields match element-wise: ``{"tags": "a"}`` matches
``{"tags": ["a", "b"]}``.

The same predicates are compiled to SQL by the metadata store (for listings
over the indexed projection) and evaluated in Python by matches() (for counter
rules over the full payload).
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError

OPERATORS = ("$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists")
ID_FIELD = "id"

_SCALARS = (str, int, float, bool, type(None))
_ORDERED = (str, int, float)


@dataclass(frozen=True)
class Predicate:
    """One field condition. ``op`` is the operator name without ``$``."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class SortSpec:
    """Single-field sort. ``field`` is an indexed prop or ``id``."""

    field: str = ID_FIELD
    direction: int = 1

    @property
    def by_id(self) -> bool:
        return self.field == ID_FIELD


@dataclass(frozen=True)
class Cursor:
    """Position after which a listing resumes."""

    value: Any
    item_id: str


def _check_operand(field_name: str, op: str, value: Any) -> None:
    if op in ("$eq", "$ne"):
        ok = isinstance(value, _SCALARS)
    elif op in ("$gt", "$gte", "$lt", "$lte"):
        ok = isinstance(value, _ORDERED) and not isinstance(value, bool)
    elif op in ("$in", "$nin"):
        ok = isinstance(value, (list, tuple)) and all(isinstance(v, _SCALARS) for v in value)
    else:
        ok = isinstance(value, bool)
    if not ok:
        raise ValidationError(
            f"Invalid operand for {op} on '{field_name}': {value!r}",
            field_name=field_name,
        )


def parse_filter(
    filter_doc: dict[str, Any] | None,
    allowed_fields: set[str] | frozenset[str] | tuple[str, ...] | None = None,
) -> list[Predicate]:
    """Parse a filter document into predicates.

    Args:
        filter_doc: Filter mapping (None means match everything)
        allowed_fields: Fields that may be filtered on; None allows any dotted path

    Raises:
        ValidationError: On unknown operators, bad operands or non-indexed fields
    """
    if filter_doc is None:
        return []
    if not isinstance(filter_doc, dict):
        raise ValidationError("Filter must be a mapping", field_name="filter")

    predicates: list[Predicate] = []
    for field_name, condition in filter_doc.items():
        if not isinstance(field_name, str) or not field_name or field_name.startswith("$"):
            raise ValidationError(f"Invalid filter field: {field_name!r}", field_name="filter")
        if allowed_fields is not None and field_name not in allowed_fields:
            raise ValidationError(
                f"Field '{field_name}' is not indexed",
                field_name=field_name,
                errors=[f"indexed fields: {sorted(allowed_fields)}"],
            )

        if isinstance(condition, dict) and condition and all(
            isinstance(k, str) and k.startswith("$") for k in condition
        ):
            for op, operand in condition.items():
                if op not in OPERATORS:
                    raise ValidationError(f"Unsupported operator: {op}", field_name=field_name)
                _check_operand(field_name, op, operand)
                if op in ("$in", "$nin"):
                    operand = tuple(operand)
                predicates.append(Predicate(field_name, op[1:], operand))
        else:
            _check_operand(field_name, "$eq", condition)
            predicates.append(Predicate(field_name, "eq", condition))
    return predicates


def parse_sort(
    sort: dict[str, int] | None,
    allowed_fields: set[str] | frozenset[str] | tuple[str, ...],
) -> SortSpec:
    """Parse a ``{field: 1|-1}`` sort document.

    Raises:
        ValidationError: If more than one field is given, the direction is not
            1 or -1, or the field is neither indexed nor ``id``
    """
    if not sort:
        return SortSpec()
    if not isinstance(sort, dict) or len(sort) != 1:
        raise ValidationError("Sort must name exactly one field", field_name="sort")
    (field_name, direction), = sort.items()
    if direction not in (1, -1) or isinstance(direction, bool):
        raise ValidationError(f"Sort direction must be 1 or -1, got {direction!r}", field_name="sort")
    if field_name != ID_FIELD and field_name not in allowed_fields:
        raise ValidationError(f"Cannot sort on non-indexed field '{field_name}'", field_name=field_name)
    return SortSpec(field_name, direction)


def encode_page_token(cursor: Cursor, sort: SortSpec) -> str:
    """Opaque continuation token (base64url JSON)."""
    raw = json.dumps(
        {"v": cursor.value, "id": cursor.item_id, "s": [sort.field, sort.direction]},
        separators=(",", ":"),
        sort_keys=True,
    )
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_page_token(token: str, sort: SortSpec) -> Cursor:
    """Decode a page token issued for the same sort.

    Raises:
        ValidationError: If the token is malformed or was issued for another sort
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        cursor = Cursor(value=data["v"], item_id=str(data["id"]))
        token_sort = tuple(data["s"])
    except (ValueError, KeyError, TypeError, binascii.Error) as e:
        raise ValidationError(f"Malformed page token: {e}", field_name="page_token")
    if token_sort != (sort.field, sort.direction):
        raise ValidationError("Page token was issued for a different sort", field_name="page_token")
    return cursor


def resolve_path(doc: dict[str, Any], path: str) -> tuple[bool, Any]:
    """Look up a dotted path. Returns (found, value)."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _candidates(value: Any) -> list[Any]:
    return list(value) if isinstance(value, list) else [value]


def _same(a: Any, b: Any) -> bool:
    # True must not equal 1
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    return a == b


def _compare(a: Any, op: str, b: Any) -> bool:
    if isinstance(a, bool):
        return False
    if isinstance(a, str) != isinstance(b, str) or not isinstance(a, _ORDERED):
        return False
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "lt":
        return a < b
    return a <= b


def _eq(found: bool, value: Any, operand: Any) -> bool:
    if operand is None:
        return not found or value is None or (isinstance(value, list) and None in value)
    if not found:
        return False
    return any(_same(c, operand) for c in _candidates(value))


def _matches_one(doc: dict[str, Any], predicate: Predicate) -> bool:
    found, value = resolve_path(doc, predicate.field)
    op = predicate.op
    if op == "eq":
        return _eq(found, value, predicate.value)
    if op == "ne":
        return not _eq(found, value, predicate.value)
    if op in ("gt", "gte", "lt", "lte"):
        return found and any(_compare(c, op, predicate.value) for c in _candidates(value))
    if op == "in":
        return any(_eq(found, value, v) for v in predicate.value)
    if op == "nin":
        return not any(_eq(found, value, v) for v in predicate.value)
    return found == predicate.value


def matches(doc: dict[str, Any], predicates: list[Predicate]) -> bool:
    """Evaluate predicates (all must hold) against a document."""
    return all(_matches_one(doc, p) for p in predicates)
