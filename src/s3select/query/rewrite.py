"""sqlglot rewrites that make bound expressions plan in DataFusion.

S3 Select treats CSV fields as text that reads as a number or a boolean
wherever the expression asks for one. DataFusion is strictly typed, so each
batch gets explicit casts chosen from the batch's column types.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Final

from sqlglot import exp, generator
from sqlglot.dialects.dialect import Dialect

from s3select.errors import QueryCompileError
from s3select.query.values import ColumnType, Kind

_ARITHMETIC: Final = (exp.Add, exp.Sub, exp.Mul, exp.Div, exp.Mod)
_COMPARISONS: Final = (exp.EQ, exp.NEQ, exp.GT, exp.GTE, exp.LT, exp.LTE)
_PREDICATES: Final = (
    *_COMPARISONS,
    exp.And,
    exp.Or,
    exp.Not,
    exp.Like,
    exp.ILike,
    exp.Escape,
    exp.Is,
    exp.In,
    exp.Between,
)
_TEXT_RESULTS: Final = (exp.DPipe, exp.Lower, exp.Upper, exp.Trim, exp.Substring)
_NUMBER_RESULTS: Final = (exp.Count, exp.Sum, exp.Avg, exp.Length, exp.Neg, *_ARITHMETIC)
_LIKE_WILDCARDS: Final = frozenset("%_")


class DataFusionDialect(Dialect):
    """Generic SQL with DataFusion's spelling of the cast targets."""

    class Generator(generator.Generator):
        TYPE_MAPPING = {
            **generator.Generator.TYPE_MAPPING,
            exp.DataType.Type.INT: "BIGINT",
            exp.DataType.Type.FLOAT: "DOUBLE",
            exp.DataType.Type.TEXT: "VARCHAR",
        }


_DIALECT: Final = DataFusionDialect()


def to_sql(node: exp.Expression) -> str:
    """Render an expression as DataFusion SQL."""
    return node.sql(dialect=_DIALECT)


def _type_kind(target: exp.DataType) -> Kind:
    if target.is_type(*exp.DataType.TEXT_TYPES):
        return Kind.TEXT
    if target.is_type(*exp.DataType.NUMERIC_TYPES):
        return Kind.NUMBER
    if target.is_type(exp.DataType.Type.BOOLEAN):
        return Kind.BOOL
    return Kind.OTHER


def _unparen(node: exp.Expression) -> exp.Expression:
    while isinstance(node, exp.Paren):
        node = node.this
    return node


def _arrow_like_pattern(pattern: str, escape: str) -> str:
    """Translate a pattern with a custom ESCAPE character to backslash escapes.

    Raises
    ------
    QueryCompileError
        Raised when the escape is not one character or ends the pattern.
    """
    if len(escape) != 1:
        msg = f"LIKE escape must be a single character, got {escape!r}."
        raise QueryCompileError(msg, code="InvalidEscapeSequence")
    parts: list[str] = []
    chars = iter(pattern)
    for char in chars:
        if char != escape:
            parts.append(char)
            continue
        following = next(chars, None)
        if following is None:
            msg = f"LIKE pattern {pattern!r} ends with its escape character."
            raise QueryCompileError(msg, code="InvalidEscapeSequence")
        parts.append(f"\\{following}" if following in _LIKE_WILDCARDS else following)
    return "".join(parts)


def _is_text_literal(node: exp.Expression | None) -> bool:
    return isinstance(node, exp.Literal) and node.is_string


def rewrite_like_escapes(node: exp.Expression) -> exp.Expression:
    """Replace ``LIKE ... ESCAPE`` over literal patterns with backslash escapes.

    Returns
    -------
    exp.Expression
        Rewritten copy of ``node``.
    """

    def rewrite(child: exp.Expression) -> exp.Expression:
        if not isinstance(child, exp.Escape):
            return child
        like = child.this
        if not isinstance(like, (exp.Like, exp.ILike)):
            return child
        if not (_is_text_literal(like.expression) and _is_text_literal(child.expression)):
            return child
        pattern = _arrow_like_pattern(like.expression.this, child.expression.this)
        return like.__class__(this=like.this.copy(), expression=exp.Literal.string(pattern))

    return node.transform(rewrite)


class TypeCoercer:
    """Insert the casts a batch's column types require.

    Parameters
    ----------
    columns
        Engine type of each generated batch column, by column name.
    """

    def __init__(self, columns: Mapping[str, ColumnType]) -> None:
        self.columns = columns

    def kind(self, node: exp.Expression) -> Kind:
        """Return the kind of value an expression produces."""
        if isinstance(node, (exp.Paren, exp.Alias)):
            return self.kind(node.this)
        if isinstance(node, exp.Column):
            column = self.columns.get(node.name)
            return column.kind if column is not None else Kind.OTHER
        if isinstance(node, exp.Literal):
            return Kind.TEXT if node.is_string else Kind.NUMBER
        if isinstance(node, exp.Boolean):
            return Kind.BOOL
        if isinstance(node, exp.Null):
            return Kind.NULL
        if isinstance(node, exp.Cast):
            return _type_kind(node.to)
        if isinstance(node, _PREDICATES):
            return Kind.BOOL
        if isinstance(node, _TEXT_RESULTS):
            return Kind.TEXT
        if isinstance(node, _NUMBER_RESULTS):
            return Kind.NUMBER
        if isinstance(node, (exp.Min, exp.Max, exp.Nullif)):
            return self.kind(node.this)
        if isinstance(node, exp.Coalesce):
            for argument in (node.this, *node.expressions):
                kind = self.kind(argument)
                if kind != Kind.NULL:
                    return kind
            return Kind.NULL
        return Kind.OTHER

    def coerce(self, node: exp.Expression) -> exp.Expression:
        """Return a copy of ``node`` with the implicit conversions made explicit."""
        tree = node.copy()
        for child in reversed(list(tree.walk())):
            self._coerce_operands(child)
        return tree

    def predicate(self, node: exp.Expression) -> exp.Expression:
        """Coerce a filter; a text-valued filter is read as a boolean."""
        tree = self.coerce(node)
        if self.kind(tree) == Kind.TEXT:
            return exp.cast(tree, "BOOLEAN")
        return tree

    def _column(self, node: exp.Expression) -> ColumnType | None:
        node = _unparen(node)
        if isinstance(node, exp.Column):
            return self.columns.get(node.name)
        return None

    def _wrap(self, node: exp.Expression, target: str) -> None:
        node.replace(exp.cast(node.copy(), target))

    def _numeric(self, node: exp.Expression | None) -> None:
        if node is None or self.kind(node) != Kind.TEXT:
            return
        column = self._column(node)
        numeric = column.numeric if column is not None else None
        self._wrap(node, numeric or "DOUBLE")

    def _boolean(self, node: exp.Expression | None) -> None:
        if node is not None and self.kind(node) == Kind.TEXT:
            self._wrap(node, "BOOLEAN")

    def _text(self, node: exp.Expression | None) -> None:
        if node is not None and self.kind(node) in (Kind.NUMBER, Kind.BOOL):
            self._wrap(node, "VARCHAR")

    def _align(self, operands: list[exp.Expression]) -> None:
        kinds = [self.kind(operand) for operand in operands]
        if Kind.NUMBER in kinds:
            for operand in operands:
                self._numeric(operand)
        elif Kind.BOOL in kinds:
            for operand in operands:
                self._boolean(operand)

    def _coerce_operands(self, node: exp.Expression) -> None:
        if isinstance(node, _ARITHMETIC):
            self._numeric(node.this)
            self._numeric(node.expression)
        elif isinstance(node, (exp.Neg, exp.Sum, exp.Avg)):
            self._numeric(node.this)
        elif isinstance(node, (exp.Min, exp.Max)):
            column = self._column(node.this)
            if column is not None and column.kind == Kind.TEXT and column.numeric is not None:
                self._wrap(node.this, column.numeric)
        elif isinstance(node, _COMPARISONS):
            self._align([node.this, node.expression])
        elif isinstance(node, exp.Between):
            self._align([node.this, node.args["low"], node.args["high"]])
        elif isinstance(node, exp.In):
            self._align([node.this, *node.expressions])
        elif isinstance(node, (exp.And, exp.Or)):
            self._boolean(node.this)
            self._boolean(node.expression)
        elif isinstance(node, exp.Not):
            self._boolean(node.this)
        elif isinstance(node, exp.DPipe):
            self._text(node.this)
            self._text(node.expression)
        elif isinstance(node, (exp.Like, exp.ILike)):
            self._text(node.this)


__all__ = [
    "DataFusionDialect",
    "TypeCoercer",
    "rewrite_like_escapes",
    "to_sql",
]
