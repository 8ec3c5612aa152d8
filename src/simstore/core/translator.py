"""Translate filter expressions into native predicates.

A backend describes what it can evaluate natively through a ``FilterDialect``
and how metadata keys are addressed through a ``KeyMapper``. The translator
walks the filter tree and splits it into two parts whose conjunction is the
original filter:

- ``native``: a predicate pushed into the native ANN query
- ``fallback``: a ``FilterExpr`` evaluated in-process over the candidates

Splitting rules:
    Comparison  pushed if its key maps and the dialect supports the operator
                for that value type, otherwise it falls back.
    And         each child is split on its own; pushable children run
                natively, the rest become the post-filter.
    Or / Not    pushed only when the whole subtree is pushable, otherwise the
                whole node falls back.

No condition is ever dropped.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from simstore.core.errors import ConfigurationError
from simstore.core.filters import (
    And,
    Comparison,
    ComparisonOp,
    FilterExpr,
    Not,
    Or,
    is_number,
)

logger = logging.getLogger(__name__)


# -- key mapping ------------------------------------------------------------


class KeyMapper(ABC):
    """Maps metadata keys to native field references."""

    @abstractmethod
    def map_key(self, key: str) -> str | None:
        """Return the native reference for a key, or None if not addressable."""
        ...

    def key_for(self, ref: str) -> str | None:
        """Return the key that maps to ``ref``, or None if no key does."""
        return None

    def validate(self) -> None:
        """Raise ConfigurationError if the mapping is not injective."""


class FlatKeyMapper(KeyMapper):
    """Metadata keys are native fields of the same name."""

    def map_key(self, key: str) -> str | None:
        return key

    def key_for(self, ref: str) -> str | None:
        return ref


_JSON_PATH = re.compile(r"^\$\.(?P<column>[A-Za-z_][A-Za-z0-9_]*)\['(?P<key>(?:[^'\\]|\\.)*)'\]$")


class JsonPathKeyMapper(KeyMapper):
    """Addresses keys inside a single JSON metadata column.

    ``color`` maps to ``$.metadata['color']``. Quotes and backslashes in keys
    are escaped, so distinct keys always yield distinct paths.
    """

    def __init__(self, column: str = "metadata") -> None:
        self.column = column

    def map_key(self, key: str) -> str | None:
        escaped = key.replace("\\", "\\\\").replace("'", "\\'")
        return f"$.{self.column}['{escaped}']"

    def key_for(self, ref: str) -> str | None:
        parsed = self.parse(ref)
        if parsed is None or parsed[0] != self.column:
            return None
        return parsed[1]

    def validate(self) -> None:
        if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", self.column or ""):
            raise ConfigurationError(f"Invalid metadata column name: {self.column!r}")

    @staticmethod
    def parse(ref: str) -> tuple[str, str] | None:
        """Split a path back into (column, key), or None if it is not a path."""
        match = _JSON_PATH.match(ref)
        if match is None:
            return None
        key = re.sub(r"\\(.)", r"\1", match.group("key"))
        return match.group("column"), key


class ColumnKeyMapper(KeyMapper):
    """Flattens selected keys onto dedicated native columns.

    Keys without a column go to ``fallback`` when given, otherwise they are
    not addressable and every condition on them is evaluated in-process.
    """

    def __init__(self, columns: Mapping[str, str], fallback: KeyMapper | None = None) -> None:
        self.columns = dict(columns)
        self.fallback = fallback

    def map_key(self, key: str) -> str | None:
        if key in self.columns:
            return self.columns[key]
        if self.fallback is not None:
            return self.fallback.map_key(key)
        return None

    def validate(self) -> None:
        seen: dict[str, str] = {}
        for key, column in self.columns.items():
            if not column:
                raise ConfigurationError(f"Empty column for metadata key {key!r}")
            if column in seen:
                raise ConfigurationError(
                    f"Metadata keys {seen[column]!r} and {key!r} both map to column {column!r}"
                )
            seen[column] = key
        if self.fallback is not None:
            self.fallback.validate()
            for key, column in self.columns.items():
                shadowed = self.fallback.key_for(column)
                if shadowed is not None and shadowed not in self.columns:
                    raise ConfigurationError(
                        f"Column {column!r} for key {key!r} collides with the fallback mapping"
                    )


# -- dialects -----------------------------------------------------------------


class FilterDialect(ABC):
    """Native predicate language of a backend."""

    supports_or: bool = True
    supports_not: bool = True

    @abstractmethod
    def supports(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> bool:
        ...

    @abstractmethod
    def comparison(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> Any:
        ...

    @abstractmethod
    def conjunction(self, parts: list[Any]) -> Any:
        ...

    @abstractmethod
    def disjunction(self, parts: list[Any]) -> Any:
        ...

    @abstractmethod
    def negation(self, part: Any) -> Any:
        ...


class WhereDialect(FilterDialect):
    """Mongo-style ``where`` documents, as used by ChromaDB.

    ``{"color": {"$eq": "red"}}``, ``{"$and": [...]}``, ``{"$or": [...]}``,
    ``{"$not": ...}``.
    """

    def __init__(
        self,
        ops: set[ComparisonOp] | frozenset[ComparisonOp] | None = None,
        supports_or: bool = True,
        supports_not: bool = True,
    ) -> None:
        self.ops = frozenset(ops) if ops is not None else frozenset(ComparisonOp)
        self.supports_or = supports_or
        self.supports_not = supports_not

    def supports(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> bool:
        return op in self.ops

    def comparison(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> dict[str, Any]:
        operand: Any = list(values) if op.is_membership else values[0]
        return {ref: {op.value: operand}}

    def conjunction(self, parts: list[Any]) -> dict[str, Any]:
        return parts[0] if len(parts) == 1 else {"$and": parts}

    def disjunction(self, parts: list[Any]) -> dict[str, Any]:
        return parts[0] if len(parts) == 1 else {"$or": parts}

    def negation(self, part: Any) -> dict[str, Any]:
        return {"$not": part}


FieldKind = Literal["tag", "bool", "numeric"]

TAG_SEPARATOR = ","

_TAG_SPECIAL = re.compile(r"([,.<>{}\[\]\"':;!@#$%^&*()\-+=~|/\\ ])")


def escape_tag(value: str) -> str:
    return _TAG_SPECIAL.sub(r"\\\1", value)


def format_tag_value(value: Any) -> str:
    """Tag representation shared by writes and queries."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_taggable(value: str) -> bool:
    """Whether a string survives RediSearch tag tokenization unchanged."""
    return bool(value) and value == value.strip() and TAG_SEPARATOR not in value


def _format_number(value: int | float) -> str:
    return repr(value) if isinstance(value, float) else str(value)


class RediSearchDialect(FilterDialect):
    """RediSearch query syntax over declared TAG and NUMERIC fields.

    Args:
        fields: Native field name -> kind. "tag" holds strings, "bool" holds
            booleans stored as tags, "numeric" holds numbers.
    """

    _TAG_OPS = frozenset({ComparisonOp.EQ, ComparisonOp.NE, ComparisonOp.IN, ComparisonOp.NOT_IN})

    def __init__(self, fields: Mapping[str, FieldKind]) -> None:
        self.fields = dict(fields)

    def supports(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> bool:
        kind = self.fields.get(ref)
        if kind == "numeric":
            return all(is_number(v) for v in values)
        if kind == "tag":
            return op in self._TAG_OPS and all(isinstance(v, str) and is_taggable(v) for v in values)
        if kind == "bool":
            return op in self._TAG_OPS and all(isinstance(v, bool) for v in values)
        return False

    def comparison(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> str:
        if self.fields[ref] == "numeric":
            return self._numeric(ref, op, values)
        tags = " | ".join(escape_tag(format_tag_value(v)) for v in values)
        term = f"@{ref}:{{{tags}}}"
        if op in (ComparisonOp.NE, ComparisonOp.NOT_IN):
            return f"-{term}"
        return term

    def _numeric(self, ref: str, op: ComparisonOp, values: tuple[Any, ...]) -> str:
        if op.is_membership:
            terms = " | ".join(f"@{ref}:[{_format_number(v)} {_format_number(v)}]" for v in values)
            term = f"({terms})"
            return f"-{term}" if op is ComparisonOp.NOT_IN else term
        value = _format_number(values[0])
        ranges = {
            ComparisonOp.EQ: f"[{value} {value}]",
            ComparisonOp.NE: f"[{value} {value}]",
            ComparisonOp.GT: f"[({value} +inf]",
            ComparisonOp.GTE: f"[{value} +inf]",
            ComparisonOp.LT: f"[-inf ({value}]",
            ComparisonOp.LTE: f"[-inf {value}]",
        }
        term = f"@{ref}:{ranges[op]}"
        return f"-{term}" if op is ComparisonOp.NE else term

    def conjunction(self, parts: list[Any]) -> str:
        return parts[0] if len(parts) == 1 else "(" + " ".join(parts) + ")"

    def disjunction(self, parts: list[Any]) -> str:
        return parts[0] if len(parts) == 1 else "(" + " | ".join(parts) + ")"

    def negation(self, part: Any) -> str:
        return f"-({part})"


# -- translation ----------------------------------------------------------------


@dataclass
class TranslatedFilter:
    """Native part and in-process part of a filter; both must hold."""

    native: Any = None
    fallback: FilterExpr | None = None

    @property
    def needs_fallback(self) -> bool:
        return self.fallback is not None


class FilterTranslator:
    """Compiles filter expressions for one backend dialect and key mapping."""

    def __init__(self, dialect: FilterDialect, key_mapper: KeyMapper) -> None:
        self.dialect = dialect
        self.key_mapper = key_mapper

    def translate(self, expr: FilterExpr | None) -> TranslatedFilter:
        if expr is None:
            return TranslatedFilter()
        native, fallback = self._split(expr)
        if fallback is not None:
            logger.debug("Filter evaluated in-process: %r", fallback)
        return TranslatedFilter(native=native, fallback=fallback)

    def _split(self, expr: FilterExpr) -> tuple[Any, FilterExpr | None]:
        if isinstance(expr, Comparison):
            return self._split_comparison(expr)
        if isinstance(expr, And):
            natives: list[Any] = []
            fallbacks: list[FilterExpr] = []
            for operand in expr.operands:
                native, fallback = self._split(operand)
                if native is not None:
                    natives.append(native)
                if fallback is not None:
                    fallbacks.append(fallback)
            native_part = self.dialect.conjunction(natives) if natives else None
            if not fallbacks:
                return native_part, None
            return native_part, fallbacks[0] if len(fallbacks) == 1 else And(*fallbacks)
        if isinstance(expr, Or):
            if not self.dialect.supports_or:
                return None, expr
            parts = [self._split(operand) for operand in expr.operands]
            if any(fallback is not None for _, fallback in parts):
                return None, expr
            return self.dialect.disjunction([native for native, _ in parts]), None
        if isinstance(expr, Not):
            if not self.dialect.supports_not:
                return None, expr
            native, fallback = self._split(expr.operand)
            if fallback is not None:
                return None, expr
            return self.dialect.negation(native), None
        raise TypeError(f"Unsupported filter node: {expr!r}")

    def _split_comparison(self, expr: Comparison) -> tuple[Any, FilterExpr | None]:
        ref = self.key_mapper.map_key(expr.key)
        values = expr.values()
        if ref is None or not self.dialect.supports(ref, expr.op, values):
            return None, expr
        return self.dialect.comparison(ref, expr.op, values), None
