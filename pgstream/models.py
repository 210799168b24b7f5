"""Shared dataclasses used across connection, analysis and export modules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Union

QueryParam = Union[str, int, float, bool, datetime, date, None]
Row = Mapping[str, Any]

_SCALAR_TYPES = (str, int, float, bool, datetime, date)


def normalize_param(value: object) -> QueryParam:
    """Pass scalars through untouched and stringify anything else."""

    if value is None or isinstance(value, _SCALAR_TYPES):
        return value  # type: ignore[return-value]
    return str(value)


@dataclass(frozen=True, slots=True)
class QueryRequest:
    """SQL text plus positional parameters for a single call."""

    sql: str
    params: tuple[QueryParam, ...] = ()
    force_readonly: bool | None = None

    @classmethod
    def build(
        cls,
        sql: str,
        params: Iterable[object] | None = None,
        *,
        force_readonly: bool | None = None,
    ) -> QueryRequest:
        return cls(
            sql=sql,
            params=tuple(normalize_param(value) for value in (params or ())),
            force_readonly=force_readonly,
        )

    def excerpt(self, limit: int = 100) -> str:
        """Return the query truncated for status payloads."""

        if len(self.sql) <= limit:
            return self.sql
        return self.sql[:limit] + "..."


class ClassificationKind(str, Enum):
    """Outcome of analyzing a statement for cursor-based execution."""

    ELIGIBLE = "eligible"
    NOT_ELIGIBLE = "not_eligible"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True, slots=True)
class CursorClassification:
    """Result of classifying one SQL text."""

    kind: ClassificationKind
    statement_kind: str | None = None
    reason: str | None = None

    @property
    def eligible(self) -> bool:
        return self.kind is ClassificationKind.ELIGIBLE


class ExportFormat(str, Enum):
    """On-disk encodings supported by the export sink."""

    JSONL = "jsonl"
    JSON = "json"

    @property
    def extension(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class ExportResult:
    """Final outcome of an export job."""

    file_path: str
    row_count: int
    format: ExportFormat
    streamed: bool = True


@dataclass(frozen=True, slots=True)
class ConnectionInfo:
    """Read-only snapshot of the session status."""

    is_connected: bool
    disconnect_reason: str | None = None
    connection_error: str | None = None

    def as_dict(self) -> dict[str, object]:
        info: dict[str, object] = {"isConnected": self.is_connected}
        if not self.is_connected and self.disconnect_reason:
            info["disconnectReason"] = self.disconnect_reason
        if self.connection_error:
            info["connectionError"] = self.connection_error
        return info


@dataclass(frozen=True, slots=True)
class PoolSettings:
    """Pool parameters applied on connect."""

    readonly: bool = True
    pool_size: int = 1
    idle_timeout_ms: int = 30_000
    connection_timeout_ms: int = 10_000


__all__ = [
    "ClassificationKind",
    "ConnectionInfo",
    "CursorClassification",
    "ExportFormat",
    "ExportResult",
    "PoolSettings",
    "QueryParam",
    "QueryRequest",
    "Row",
    "normalize_param",
]
