"""Statement classification for cursor-based (streaming) execution."""

from __future__ import annotations

import logging
import re

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError
from sqlglot.tokens import TokenType

from .models import ClassificationKind, CursorClassification

LOG = logging.getLogger(__name__)

_QUERY_TYPES: tuple[type[exp.Expression], ...] = (
    exp.Select,
    exp.Union,
    exp.Intersect,
    exp.Except,
    exp.Values,
)

_READ_KEYWORDS = frozenset({"SELECT", "WITH", "SHOW", "EXPLAIN", "VALUES", "TABLE"})

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


class CursorAnalyzer:
    """Decides whether a statement can be fetched through a server-side cursor.

    Only the first statement of the text is inspected. Anything that fails to
    parse is reported as ``UNPARSEABLE`` and is never eligible.
    """

    def __init__(self, *, dialect: str = "postgres") -> None:
        self._dialect = dialect

    def classify(self, sql: str) -> CursorClassification:
        statement = (sql or "").strip()
        if not statement:
            return CursorClassification(ClassificationKind.NOT_ELIGIBLE, reason="empty statement")
        try:
            parsed = sqlglot.parse(statement, read=self._dialect)
        except Exception as exc:
            LOG.debug("Statement failed to parse; treating as not cursor-eligible: %s", exc)
            return CursorClassification(ClassificationKind.UNPARSEABLE, reason=_describe_error(exc))
        if not parsed or parsed[0] is None:
            return CursorClassification(ClassificationKind.NOT_ELIGIBLE, reason="no statements")

        first = _unwrap(parsed[0])
        kind = _statement_kind(first)
        if not isinstance(first, _QUERY_TYPES):
            return CursorClassification(
                ClassificationKind.NOT_ELIGIBLE,
                statement_kind=kind,
                reason=f"{kind.upper()} statements cannot be streamed",
            )
        if isinstance(first, exp.Select) and first.args.get("into") is not None:
            return CursorClassification(
                ClassificationKind.NOT_ELIGIBLE,
                statement_kind=kind,
                reason="SELECT INTO creates a table and cannot be streamed",
            )
        return CursorClassification(ClassificationKind.ELIGIBLE, statement_kind=kind)


def supports_cursor(sql: str, *, dialect: str = "postgres") -> bool:
    """Boolean shortcut over :meth:`CursorAnalyzer.classify`."""

    return CursorAnalyzer(dialect=dialect).classify(sql).eligible


def is_read_query(sql: str, *, dialect: str = "postgres") -> bool:
    """Cheap keyword check used to reject obvious writes before execution.

    Leading comments and opening parentheses are skipped and the first
    keyword must match exactly. Not a safety boundary:
    ``WITH x AS (DELETE ...) SELECT`` passes it. The read-only transaction is
    what actually blocks writes.
    """

    try:
        tokens = sqlglot.tokenize(sql or "", read=dialect)
    except TokenError as exc:
        LOG.debug("Statement failed to tokenize; treating as not a read: %s", _describe_error(exc))
        return False
    for token in tokens:
        if token.token_type is TokenType.L_PAREN:
            continue
        return token.text.upper() in _READ_KEYWORDS
    return False


def _describe_error(exc: Exception) -> str:
    errors = getattr(exc, "errors", None)
    if isinstance(exc, ParseError) and errors:
        first = errors[0]
        description = first.get("description")
        if description:
            line, col = first.get("line"), first.get("col")
            if line is not None and col is not None:
                return f"{description} (line {line}, column {col})"
            return str(description)
    return _ANSI_ESCAPE.sub("", str(exc)).strip()


def _unwrap(expression: exp.Expression) -> exp.Expression:
    while isinstance(expression, exp.Subquery) and isinstance(expression.this, exp.Expression):
        expression = expression.this
    return expression


def _statement_kind(expression: exp.Expression) -> str:
    if isinstance(expression, exp.Command):
        return str(expression.this).lower()
    return expression.key


__all__ = ["CursorAnalyzer", "is_read_query", "supports_cursor"]
