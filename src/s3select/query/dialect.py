"""Restricted S3 Select SQL grammar on top of sqlglot.

Parsing happens once per request. The result is a validated
``SelectStatement``: a single-table SELECT with a projection list, an
optional WHERE predicate, an optional integer LIMIT and, for aggregate
queries, COUNT/SUM/AVG/MIN/MAX calls with no GROUP BY.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from s3select.errors import QueryCompileError

TABLE_NAME: Final = "s3object"

AGGREGATE_TYPES: Final = (exp.Count, exp.Sum, exp.Avg, exp.Min, exp.Max)

_UNSUPPORTED_CLAUSES: Final = {
    "joins": "JOIN",
    "laterals": "LATERAL",
    "group": "GROUP BY",
    "having": "HAVING",
    "order": "ORDER BY",
    "distinct": "DISTINCT",
    "offset": "OFFSET",
    "qualify": "QUALIFY",
    "windows": "WINDOW",
    "with": "WITH",
    "into": "INTO",
}

_T = exp.DataType.Type

SCALAR_FUNCTIONS: Final = (
    exp.Cast,
    exp.Lower,
    exp.Upper,
    exp.Length,
    exp.Trim,
    exp.Substring,
    exp.Coalesce,
    exp.Nullif,
    exp.Case,
    exp.If,
)

CAST_TYPES: Final = frozenset(
    {
        _T.TINYINT,
        _T.SMALLINT,
        _T.INT,
        _T.BIGINT,
        _T.FLOAT,
        _T.DOUBLE,
        _T.DECIMAL,
        _T.TEXT,
        _T.VARCHAR,
        _T.CHAR,
        _T.NCHAR,
        _T.NVARCHAR,
        _T.BOOLEAN,
    }
)

_LENGTH_NAMES: Final = frozenset({"CHAR_LENGTH", "CHARACTER_LENGTH"})
_STAR_SOURCE_RE = re.compile(r"\bs3object\s*\[\s*\*\s*\]", re.IGNORECASE)
_UNSUPPORTED = "UnsupportedSqlOperation"


@dataclass(frozen=True, slots=True)
class PathStep:
    """One step of a column reference: a key (optionally quoted) or an index."""

    key: str | int
    quoted: bool = False

    @property
    def is_index(self) -> bool:
        """Return whether the step indexes into a list."""
        return isinstance(self.key, int)


@dataclass(frozen=True, slots=True)
class SelectStatement:
    """Validated single-table SELECT.

    Attributes
    ----------
    sql
        Source SQL text as received.
    projections
        Select-list expressions, aliases included.
    where
        Filter predicate, if any.
    limit
        LIMIT value, if any.
    table_alias
        Alias bound to the object table, if any.
    aggregate
        Whether the projections are aggregate calls.
    star
        Whether the projection is ``*`` (or ``alias.*``).
    """

    sql: str
    projections: tuple[exp.Expression, ...]
    where: exp.Expression | None
    limit: int | None
    table_alias: str | None
    aggregate: bool
    star: bool


def _unsupported(what: str) -> QueryCompileError:
    return QueryCompileError(f"{what} is not supported.", code=_UNSUPPORTED)


def is_aggregate(node: exp.Expression) -> bool:
    """Return whether a node is a supported aggregate call."""
    return isinstance(node, AGGREGATE_TYPES)


def contains_aggregate(node: exp.Expression) -> bool:
    """Return whether any node in the subtree is an aggregate call."""
    return any(isinstance(child, exp.AggFunc) for child in node.walk())


def is_reference(node: exp.Expression) -> bool:
    """Return whether a node addresses a field of the current row."""
    if isinstance(node, exp.Column):
        return not isinstance(node.this, exp.Star)
    if isinstance(node, (exp.Dot, exp.Bracket)):
        return is_reference(node.this)
    return False


def reference_steps(node: exp.Expression) -> list[PathStep]:
    """Flatten a Column/Dot/Bracket reference into path steps.

    Raises
    ------
    QueryCompileError
        Raised for wildcard or non-literal index steps.
    """
    if isinstance(node, exp.Identifier):
        return [PathStep(node.name, quoted=bool(node.args.get("quoted")))]
    if isinstance(node, exp.Column):
        return [
            PathStep(part.name, quoted=bool(part.args.get("quoted")))
            for part in node.parts
            if isinstance(part, exp.Identifier)
        ]
    if isinstance(node, exp.Dot):
        return [*reference_steps(node.this), *reference_steps(node.expression)]
    if isinstance(node, exp.Bracket):
        steps = reference_steps(node.this)
        for index in node.expressions:
            if not (isinstance(index, exp.Literal) and index.is_int):
                msg = "Only integer literal indexes are supported in key paths."
                raise QueryCompileError(msg, code="InvalidKeyPath")
            steps.append(PathStep(int(index.this)))
        return steps
    msg = f"Unsupported key path element: {node.sql()}"
    raise QueryCompileError(msg, code="InvalidKeyPath")


def build_reference(steps: list[PathStep]) -> exp.Expression:
    """Build a canonical Column/Dot/Bracket expression from path steps."""
    head, *rest = steps
    node: exp.Expression = exp.Column(this=exp.to_identifier(str(head.key), quoted=head.quoted))
    for step in rest:
        if step.is_index:
            node = exp.Bracket(this=node, expressions=[exp.Literal.number(step.key)])
        else:
            node = exp.Dot(this=node, expression=exp.to_identifier(str(step.key), quoted=step.quoted))
    return node


def _parse(sql: str) -> exp.Expression:
    text = _STAR_SOURCE_RE.sub("S3Object", sql)
    try:
        tree = sqlglot.parse_one(text)
    except SqlglotError as exc:
        msg = f"Failed to parse SQL expression: {exc}"
        raise QueryCompileError(msg) from exc
    if tree is None:
        msg = "SQL expression is empty."
        raise QueryCompileError(msg)
    return tree


def _table_alias(select: exp.Select) -> str | None:
    source = select.find(exp.From)
    if source is None:
        return None
    table = source.this
    if not isinstance(table, exp.Table) or table.args.get("db") or table.args.get("catalog"):
        msg = "FROM must name the S3Object table."
        raise QueryCompileError(msg, code=_UNSUPPORTED)
    if table.name.lower() != TABLE_NAME:
        msg = f"Unknown table {table.name!r}; queries run against S3Object."
        raise QueryCompileError(msg, code=_UNSUPPORTED)
    return table.alias or None


def _limit(select: exp.Select) -> int | None:
    limit = select.find(exp.Limit)
    if limit is None:
        return None
    value = limit.args.get("expression") or limit.this
    if not (isinstance(value, exp.Literal) and value.is_int):
        msg = "LIMIT requires a non-negative integer literal."
        raise QueryCompileError(msg)
    count = int(value.this)
    if count < 0:
        msg = "LIMIT requires a non-negative integer literal."
        raise QueryCompileError(msg)
    return count


def _check_nodes(select: exp.Select) -> None:
    for node in select.walk():
        if node is select:
            continue
        if isinstance(node, (exp.Select, exp.Subquery, exp.Union, exp.Intersect, exp.Except)):
            raise _unsupported("Sub-queries")
        if isinstance(node, exp.Window):
            raise _unsupported("Window functions")
        if isinstance(node, exp.Join):
            raise _unsupported("JOIN")
    for key, label in _UNSUPPORTED_CLAUSES.items():
        if select.args.get(key):
            raise _unsupported(label)


def _check_functions(select: exp.Select) -> None:
    for node in list(select.walk()):
        if isinstance(node, exp.Anonymous) and node.name.upper() in _LENGTH_NAMES:
            if len(node.expressions) != 1:
                msg = f"{node.name} takes exactly one argument."
                raise QueryCompileError(msg, code="IncorrectSqlFunctionArgumentType")
            node.replace(exp.Length(this=node.expressions[0].copy()))
            continue
        if isinstance(node, exp.Cast):
            target = node.args.get("to")
            if not (isinstance(target, exp.DataType) and target.this in CAST_TYPES):
                sql = target.sql() if target is not None else "?"
                msg = f"Unsupported CAST target type {sql}."
                raise QueryCompileError(msg, code="InvalidCast")
        if isinstance(node, exp.AggFunc):
            continue
        if isinstance(node, exp.Func) and not isinstance(node, SCALAR_FUNCTIONS):
            name = node.name if isinstance(node, exp.Anonymous) else node.sql_name()
            msg = f"Unsupported function {name}."
            raise QueryCompileError(msg, code="UnsupportedFunction")


def _check_aggregates(projections: list[exp.Expression], where: exp.Expression | None) -> bool:
    if where is not None and contains_aggregate(where):
        msg = "Aggregate functions are not allowed in WHERE."
        raise QueryCompileError(msg, code=_UNSUPPORTED)
    aggregated = False
    plain = False
    for projection in projections:
        for node in projection.walk():
            if isinstance(node, exp.AggFunc):
                if not is_aggregate(node):
                    raise _unsupported(f"Aggregate {node.sql_name()}")
                if isinstance(node.this, exp.Distinct):
                    raise _unsupported("DISTINCT aggregates")
                if any(contains_aggregate(arg) for arg in node.iter_expressions()):
                    msg = "Aggregate calls cannot be nested."
                    raise QueryCompileError(msg, code=_UNSUPPORTED)
                aggregated = True
        if _has_bare_reference(projection):
            plain = True
    if aggregated and plain:
        msg = "Cannot mix aggregate and non-aggregate expressions in the select list."
        raise QueryCompileError(msg, code=_UNSUPPORTED)
    return aggregated


def _has_bare_reference(node: exp.Expression) -> bool:
    if isinstance(node, exp.AggFunc):
        return False
    if is_reference(node) or isinstance(node, exp.Star):
        return True
    if isinstance(node, exp.Column) and isinstance(node.this, exp.Star):
        return True
    return any(_has_bare_reference(child) for child in node.iter_expressions())


def parse_select(sql: str) -> SelectStatement:
    """Parse and validate an S3 Select SQL expression.

    Parameters
    ----------
    sql
        SQL text from the request.

    Returns
    -------
    SelectStatement
        Validated statement with LIMIT separated out.

    Raises
    ------
    QueryCompileError
        Raised for syntax errors and constructs outside the supported dialect.
    """
    tree = _parse(sql)
    if not isinstance(tree, exp.Select):
        raise _unsupported(f"Statement type {tree.key.upper()}")
    _check_nodes(tree)
    _check_functions(tree)
    table_alias = _table_alias(tree)
    projections = list(tree.expressions)
    star = any(
        isinstance(item, exp.Star) or (isinstance(item, exp.Column) and isinstance(item.this, exp.Star))
        for item in projections
    )
    if star and len(projections) > 1:
        raise _unsupported("Combining * with other select expressions")
    where_clause = tree.find(exp.Where)
    where = where_clause.this if where_clause is not None else None
    aggregate = _check_aggregates(projections, where)
    return SelectStatement(
        sql=sql,
        projections=tuple(projections),
        where=where,
        limit=_limit(tree),
        table_alias=table_alias,
        aggregate=aggregate,
        star=star,
    )


__all__ = [
    "AGGREGATE_TYPES",
    "CAST_TYPES",
    "SCALAR_FUNCTIONS",
    "TABLE_NAME",
    "PathStep",
    "SelectStatement",
    "build_reference",
    "contains_aggregate",
    "is_aggregate",
    "is_reference",
    "parse_select",
    "reference_steps",
]
