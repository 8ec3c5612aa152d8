"""Backend-independent metadata filter expressions.

A filter is a small tree of comparisons over metadata keys combined with
``And``, ``Or`` and ``Not``:

    from simstore.core.filters import eq, gte, in_

    expr = eq("color", "red") & (gte("year", 2020) | in_("tag", ["a", "b"]))

The same tree is compiled to native predicates by a translator, or evaluated
in-process with ``evaluate()`` when a backend cannot push a condition down.

Missing keys never match ``=``, ``IN`` or ordering comparisons, and always
match ``!=`` and ``NOT IN``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from simstore.core.errors import InvalidFilterError
from simstore.core.models import Scalar, is_scalar


class ComparisonOp(str, Enum):
    EQ = "$eq"
    NE = "$ne"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NOT_IN = "$nin"

    @property
    def is_ordering(self) -> bool:
        return self in (ComparisonOp.GT, ComparisonOp.GTE, ComparisonOp.LT, ComparisonOp.LTE)

    @property
    def is_membership(self) -> bool:
        return self in (ComparisonOp.IN, ComparisonOp.NOT_IN)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if is_number(value):
        return "number"
    return "str"


class _Combinable:
    def __and__(self, other: "FilterExpr") -> "And":
        return And(self, other)  # type: ignore[arg-type]

    def __or__(self, other: "FilterExpr") -> "Or":
        return Or(self, other)  # type: ignore[arg-type]

    def __invert__(self) -> "Not":
        return Not(self)  # type: ignore[arg-type]


@dataclass(frozen=True)
class Comparison(_Combinable):
    """Leaf comparison ``key <op> value``."""

    key: str
    op: ComparisonOp
    value: Union[Scalar, tuple[Scalar, ...]]

    def __post_init__(self) -> None:
        if not isinstance(self.key, str) or not self.key:
            raise InvalidFilterError(f"Filter key must be a non-empty string, got {self.key!r}")
        if self.op.is_membership:
            if isinstance(self.value, (str, bytes)) or not isinstance(self.value, Iterable):
                raise InvalidFilterError(f"{self.op.name} on {self.key!r} needs a collection of values")
            values = tuple(self.value)
            if not values:
                raise InvalidFilterError(f"{self.op.name} on {self.key!r} needs at least one value")
            if not all(is_scalar(v) for v in values):
                raise InvalidFilterError(f"{self.op.name} on {self.key!r} accepts scalar values only")
            object.__setattr__(self, "value", values)
        elif self.op.is_ordering:
            if not is_number(self.value):
                raise InvalidFilterError(
                    f"{self.op.name} on {self.key!r} requires a numeric value, got {self.value!r}"
                )
        elif not is_scalar(self.value):
            raise InvalidFilterError(f"{self.op.name} on {self.key!r} requires a scalar value")

    def values(self) -> tuple[Scalar, ...]:
        """Comparison value(s) as a tuple."""
        return self.value if isinstance(self.value, tuple) else (self.value,)


@dataclass(frozen=True, init=False)
class And(_Combinable):
    operands: tuple["FilterExpr", ...]

    def __init__(self, *operands: "FilterExpr") -> None:
        object.__setattr__(self, "operands", _check_operands("AND", operands))


@dataclass(frozen=True, init=False)
class Or(_Combinable):
    operands: tuple["FilterExpr", ...]

    def __init__(self, *operands: "FilterExpr") -> None:
        object.__setattr__(self, "operands", _check_operands("OR", operands))


@dataclass(frozen=True)
class Not(_Combinable):
    operand: "FilterExpr"

    def __post_init__(self) -> None:
        _check_operands("NOT", (self.operand,))


FilterExpr = Union[Comparison, And, Or, Not]


def _check_operands(name: str, operands: tuple[Any, ...]) -> tuple["FilterExpr", ...]:
    if not operands:
        raise InvalidFilterError(f"{name} needs at least one operand")
    for operand in operands:
        if not isinstance(operand, (Comparison, And, Or, Not)):
            raise InvalidFilterError(f"{name} operand must be a filter expression, got {operand!r}")
    return tuple(operands)


def eq(key: str, value: Scalar) -> Comparison:
    return Comparison(key, ComparisonOp.EQ, value)


def ne(key: str, value: Scalar) -> Comparison:
    return Comparison(key, ComparisonOp.NE, value)


def gt(key: str, value: int | float) -> Comparison:
    return Comparison(key, ComparisonOp.GT, value)


def gte(key: str, value: int | float) -> Comparison:
    return Comparison(key, ComparisonOp.GTE, value)


def lt(key: str, value: int | float) -> Comparison:
    return Comparison(key, ComparisonOp.LT, value)


def lte(key: str, value: int | float) -> Comparison:
    return Comparison(key, ComparisonOp.LTE, value)


def in_(key: str, values: Iterable[Scalar]) -> Comparison:
    return Comparison(key, ComparisonOp.IN, values)  # type: ignore[arg-type]


def not_in(key: str, values: Iterable[Scalar]) -> Comparison:
    return Comparison(key, ComparisonOp.NOT_IN, values)  # type: ignore[arg-type]


def and_(*operands: FilterExpr) -> And:
    return And(*operands)


def or_(*operands: FilterExpr) -> Or:
    return Or(*operands)


def not_(operand: FilterExpr) -> Not:
    return Not(operand)


def filter_from_dict(data: Mapping[str, Any]) -> FilterExpr:
    """Build a filter from a Mongo-style dict.

    Examples:
        >>> filter_from_dict({"color": "red"})
        >>> filter_from_dict({"year": {"$gte": 2020}, "color": {"$in": ["red", "blue"]}})
        >>> filter_from_dict({"$or": [{"color": "red"}, {"$not": {"year": {"$lt": 2000}}}]})

    Several keys at one level are combined with AND.
    """
    if not isinstance(data, Mapping) or not data:
        raise InvalidFilterError(f"Filter must be a non-empty mapping, got {data!r}")

    parts: list[FilterExpr] = []
    for key, value in data.items():
        if key in ("$and", "$or"):
            if not isinstance(value, list) or not value:
                raise InvalidFilterError(f"{key} expects a non-empty list")
            children = [filter_from_dict(child) for child in value]
            parts.append(And(*children) if key == "$and" else Or(*children))
        elif key == "$not":
            parts.append(Not(filter_from_dict(value)))
        elif key.startswith("$"):
            raise InvalidFilterError(f"Unknown logical operator {key!r}")
        elif isinstance(value, Mapping):
            if not value:
                raise InvalidFilterError(f"Empty condition for {key!r}")
            for op_name, operand in value.items():
                try:
                    op = ComparisonOp(op_name)
                except ValueError:
                    raise InvalidFilterError(f"Unknown comparison operator {op_name!r}") from None
                parts.append(Comparison(key, op, operand))
        else:
            parts.append(Comparison(key, ComparisonOp.EQ, value))

    return parts[0] if len(parts) == 1 else And(*parts)


MISSING = object()


def compare(op: ComparisonOp, actual: Any, expected: Any) -> bool:
    """Apply one comparison to a metadata value (``MISSING`` if absent).

    Values of different kinds (bool, number, string) never compare equal.
    """
    if op is ComparisonOp.NE:
        return not compare(ComparisonOp.EQ, actual, expected)
    if op is ComparisonOp.NOT_IN:
        return not compare(ComparisonOp.IN, actual, expected)
    if actual is MISSING or actual is None:
        return False
    if op is ComparisonOp.EQ:
        return _kind(actual) == _kind(expected) and actual == expected
    if op is ComparisonOp.IN:
        return any(compare(ComparisonOp.EQ, actual, v) for v in expected)
    if not is_number(actual):
        return False
    if op is ComparisonOp.GT:
        return actual > expected
    if op is ComparisonOp.GTE:
        return actual >= expected
    if op is ComparisonOp.LT:
        return actual < expected
    return actual <= expected


def evaluate(expr: FilterExpr, metadata: Mapping[str, Any]) -> bool:
    """Evaluate a filter against a record's metadata in-process."""
    if isinstance(expr, Comparison):
        return compare(expr.op, metadata.get(expr.key, MISSING), expr.value)
    if isinstance(expr, And):
        return all(evaluate(operand, metadata) for operand in expr.operands)
    if isinstance(expr, Or):
        return any(evaluate(operand, metadata) for operand in expr.operands)
    if isinstance(expr, Not):
        return not evaluate(expr.operand, metadata)
    raise InvalidFilterError(f"Unsupported filter node: {expr!r}")


def iter_comparisons(expr: FilterExpr) -> Iterable[Comparison]:
    """Yield every leaf comparison of a filter tree."""
    if isinstance(expr, Comparison):
        yield expr
    elif isinstance(expr, (And, Or)):
        for operand in expr.operands:
            yield from iter_comparisons(operand)
    elif isinstance(expr, Not):
        yield from iter_comparisons(expr.operand)
