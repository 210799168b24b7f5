"""Named operations exposed to a dispatch layer.

Every handler returns an :class:`OperationResult`; none of them raise. The
core does the work, these only shape inputs and payloads.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlglot import exp

from . import __version__
from .analyzer import is_read_query
from .config import ServerConfig
from .connections import ConnectionManager
from .coordinator import StreamingQueryCoordinator
from .errors import (
    ExportInterruptedError,
    FileIOError,
    ObjectNotFoundError,
    PgStreamError,
    QueryExecutionError,
    ReadOnlyViolationError,
)
from .export import to_jsonable
from .models import ExportFormat, QueryRequest

LOG = logging.getLogger(__name__)

SERVICE_NAME = "pgstream"

MAX_FIND_LIMIT = 1000

_OBJECT_QUERIES = {
    "table": (
        "SELECT table_name AS name, 'table' AS type FROM information_schema.tables "
        "WHERE table_schema = $1 AND table_type = 'BASE TABLE'"
    ),
    "view": (
        "SELECT table_name AS name, 'view' AS type FROM information_schema.views "
        "WHERE table_schema = $1"
    ),
    "function": (
        "SELECT p.proname AS name, 'function' AS type FROM pg_proc p "
        "JOIN pg_namespace n ON n.oid = p.pronamespace "
        "WHERE n.nspname = $1 AND p.prokind = 'f'"
    ),
}


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Success payload or structured failure returned by every operation."""

    success: bool
    data: Mapping[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, exc: BaseException, **context: Any) -> OperationResult:
        cause = exc.__cause__
        details = {key: value for key, value in context.items() if value is not None}
        if isinstance(exc, (ExportInterruptedError, FileIOError)) and exc.file_path:
            details.setdefault("filePath", exc.file_path)
        if isinstance(exc, ExportInterruptedError):
            details["rowsWritten"] = exc.rows_written
            if cause is not None:
                details["causeType"] = type(cause).__name__
        if isinstance(exc, QueryExecutionError) and exc.sqlstate:
            details["sqlstate"] = exc.sqlstate
        return cls(success=False, error=str(exc), error_type=type(exc).__name__, context=details)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        payload: dict[str, Any] = {"success": False, "error": self.error, "errorType": self.error_type}
        payload.update(self.context)
        return payload

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(to_jsonable(self.to_dict()), indent=indent, ensure_ascii=False, allow_nan=False)


class Operations:
    """Handlers for the named operations, sharing one session manager."""

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        config: ServerConfig | None = None,
        coordinator: StreamingQueryCoordinator | None = None,
    ) -> None:
        self._manager = manager
        self._config = config or ServerConfig()
        self._coordinator = coordinator or StreamingQueryCoordinator(manager, export_dir=self._config.export_dir)

    async def connect(self) -> OperationResult:
        try:
            connection_string = self._manager.resolve_connection_string()
            if self._manager.is_connected and self._manager.connection_string == connection_string:
                return OperationResult.ok(
                    message="Already connected to PostgreSQL with the same connection string",
                    isConnected=True,
                )
            await self._manager.connect(
                readonly=self._manager.readonly,
                pool_size=self._config.pool_size,
            )
        except Exception as exc:
            return self._failure("connect", exc)
        return OperationResult.ok(
            message="Connected to PostgreSQL successfully",
            isConnected=True,
            readonly=self._manager.readonly,
        )

    async def disconnect(self) -> OperationResult:
        if not self._manager.is_connected:
            return OperationResult.ok(message="Already disconnected from PostgreSQL", isConnected=False)
        try:
            await self._manager.disconnect()
        except Exception as exc:
            return self._failure("disconnect", exc)
        return OperationResult.ok(message="Disconnected from PostgreSQL successfully", isConnected=False)

    async def service_info(self) -> OperationResult:
        info = self._manager.connection_info()
        data: dict[str, Any] = {
            "name": SERVICE_NAME,
            "version": __version__,
            "readonly": self._manager.readonly,
            "timezone": self._config.timezone,
        }
        data.update(info.as_dict())
        if info.is_connected:
            data["poolSize"] = self._manager.pool_size
            data["idleTimeoutMillis"] = self._manager.idle_timeout_ms
            data["connectionTimeoutMillis"] = self._manager.connection_timeout_ms
        return OperationResult.ok(**data)

    async def query(
        self,
        sql: str,
        params: Iterable[object] | None = None,
        read_only: bool | None = None,
    ) -> OperationResult:
        """Run an arbitrary statement; ``read_only=True`` forces a read-only transaction."""

        request = QueryRequest.build(sql, params, force_readonly=read_only)
        try:
            if self._manager.readonly and read_only is not False and not is_read_query(sql):
                raise ReadOnlyViolationError("Cannot perform non-SELECT query in read-only mode")
            elif read_only is True and not is_read_query(sql):
                raise ReadOnlyViolationError("Cannot perform non-SELECT query when read-only is forced")
            rows = await self._manager.execute_query(
                request.sql, request.params, force_readonly=request.force_readonly
            )
        except Exception as exc:
            return self._failure("query", exc, query=request.excerpt())
        return OperationResult.ok(query=request.excerpt(), result=rows, rowCount=len(rows))

    async def execute_sql(
        self,
        sql: str,
        params: Iterable[object] | None = None,
        save_to_file: bool = False,
        file_path: str | None = None,
        format: ExportFormat | str = ExportFormat.JSON,
        force_save_to_file: bool = False,
    ) -> OperationResult:
        if save_to_file:
            return await self.export(
                sql,
                params,
                file_path=file_path,
                format=format,
                force_save_to_file=force_save_to_file,
            )
        request = QueryRequest.build(sql, params)
        try:
            if self._manager.readonly and not is_read_query(sql):
                raise ReadOnlyViolationError("Cannot perform write operation in read-only mode")
            rows = await self._manager.execute_query(request.sql, request.params)
        except Exception as exc:
            return self._failure("execute_sql", exc, query=request.excerpt())
        return OperationResult.ok(query=request.sql, records=rows, count=len(rows))

    async def export(
        self,
        sql: str,
        params: Iterable[object] | None = None,
        *,
        file_path: str | None = None,
        format: ExportFormat | str = ExportFormat.JSONL,
        force_save_to_file: bool = False,
        force_readonly: bool | None = None,
    ) -> OperationResult:
        request = QueryRequest.build(sql, params)
        try:
            result = await self._coordinator.export_to_file(
                request.sql,
                request.params,
                path=file_path,
                format=format,
                force_save_to_file=force_save_to_file,
                force_readonly=force_readonly,
            )
        except Exception as exc:
            return self._failure("export", exc, query=request.excerpt(), filePath=file_path)
        return OperationResult.ok(
            savedToFile=True,
            filePath=result.file_path,
            format=result.format.value,
            count=result.row_count,
            streamed=result.streamed,
            query=request.excerpt(),
            message=f"{result.row_count} records were written to the file.",
        )

    async def list_schemas(self) -> OperationResult:
        try:
            rows = await self._manager.execute_query(
                """
                SELECT schema_name
                FROM information_schema.schemata
                WHERE schema_name NOT IN ('information_schema', 'pg_catalog', 'pg_toast')
                ORDER BY schema_name
                """
            )
        except Exception as exc:
            return self._failure("list_schemas", exc)
        schemas = [row["schema_name"] for row in rows]
        return OperationResult.ok(schemas=schemas, count=len(schemas))

    async def list_tables(self, schema: str = "public") -> OperationResult:
        try:
            rows = await self._manager.execute_query(
                """
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = $1 AND table_type = 'BASE TABLE'
                ORDER BY table_name
                """,
                (schema,),
            )
        except Exception as exc:
            return self._failure("list_tables", exc, schema=schema)
        tables = [row["table_name"] for row in rows]
        return OperationResult.ok(schema=schema, tables=tables, count=len(tables))

    async def list_columns(self, table: str, schema: str = "public") -> OperationResult:
        try:
            rows = await self._manager.execute_query(
                """
                SELECT column_name, data_type, is_nullable, column_default, character_maximum_length
                FROM information_schema.columns
                WHERE table_schema = $1 AND table_name = $2
                ORDER BY ordinal_position
                """,
                (schema, table),
            )
        except Exception as exc:
            return self._failure("list_columns", exc, schema=schema, table=table)
        return OperationResult.ok(schema=schema, table=table, columns=rows, count=len(rows))

    async def count(
        self,
        table: str,
        schema: str = "public",
        filter: Mapping[str, object] | None = None,
        where: str | None = None,
    ) -> OperationResult:
        clause, request_params = _where_clause(filter, where)
        sql = f"SELECT COUNT(*) AS count FROM {_quote_table(table, schema)}{clause}"
        request = QueryRequest.build(sql, request_params)
        try:
            rows = await self._manager.execute_query(request.sql, request.params)
        except Exception as exc:
            return self._failure("count", exc, schema=schema, table=table)
        total = int(rows[0]["count"]) if rows else 0
        return OperationResult.ok(schema=schema, table=table, count=total, filter=dict(filter or {}) or None, where=where)

    async def explain(
        self,
        sql: str,
        analyze: bool = False,
        verbose: bool = False,
        costs: bool = True,
        buffers: bool = False,
        format: str = "text",
    ) -> OperationResult:
        options: list[str] = []
        if analyze:
            options.append("ANALYZE")
        if verbose:
            options.append("VERBOSE")
        if not costs:
            options.append("COSTS OFF")
        if buffers:
            options.append("BUFFERS")
        plan_format = format.lower()
        if plan_format not in {"text", "json", "xml", "yaml"}:
            return OperationResult.failure(
                ValueError(f"Unsupported EXPLAIN format '{format}'"), query=QueryRequest(sql).excerpt()
            )
        if plan_format != "text":
            options.append(f"FORMAT {plan_format.upper()}")
        statement = "EXPLAIN "
        if options:
            statement += f"({', '.join(options)}) "
        statement += sql
        request = QueryRequest(sql)
        try:
            rows = await self._manager.execute_query(statement)
        except Exception as exc:
            return self._failure("explain", exc, query=request.excerpt())
        lines = [next(iter(row.values())) for row in rows]
        plan: object
        if plan_format == "json" and lines:
            plan = json.loads(lines[0]) if isinstance(lines[0], str) else lines[0]
        else:
            plan = "\n".join(str(line) for line in lines)
        return OperationResult.ok(query=request.excerpt(), plan=plan, analyze=analyze, format=plan_format)

    async def list_databases(self) -> OperationResult:
        try:
            rows = await self._manager.execute_query(
                "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
            )
        except Exception as exc:
            return self._failure("list_databases", exc)
        databases = [row["datname"] for row in rows]
        return OperationResult.ok(databases=databases, count=len(databases))

    async def table_info(self, table: str, schema: str = "public") -> OperationResult:
        """Row count and on-disk size (table, indexes and TOAST) of one table."""

        qualified = _quote_table(table, schema)
        try:
            rows = await self._manager.execute_query(
                f"SELECT (SELECT COUNT(*) FROM {qualified}) AS row_count, "
                "pg_total_relation_size($1::text::regclass) AS size_bytes, "
                "pg_size_pretty(pg_total_relation_size($1::text::regclass)) AS size_pretty",
                (qualified,),
            )
            if not rows:
                raise ObjectNotFoundError(f'Table "{table}" does not exist in schema "{schema}"')
        except Exception as exc:
            return self._failure("table_info", exc, schema=schema, table=table)
        row = rows[0]
        return OperationResult.ok(
            schema=schema,
            table=table,
            rowCount=int(row["row_count"]),
            size={"bytes": int(row["size_bytes"]), "pretty": row["size_pretty"]},
        )

    async def list_objects(self, schema: str = "public", type: str = "all") -> OperationResult:
        object_type = type.lower()
        if object_type != "all" and object_type not in _OBJECT_QUERIES:
            return OperationResult.failure(ValueError(f"Unsupported object type '{type}'"), schema=schema)
        if object_type == "all":
            sql = " UNION ALL ".join(_OBJECT_QUERIES.values()) + " ORDER BY type, name"
        else:
            sql = _OBJECT_QUERIES[object_type] + " ORDER BY name"
        try:
            rows = await self._manager.execute_query(sql, (schema,))
        except Exception as exc:
            return self._failure("list_objects", exc, schema=schema, type=object_type)
        return OperationResult.ok(schema=schema, type=object_type, objects=rows, count=len(rows))

    async def show_object(self, name: str, type: str, schema: str = "public") -> OperationResult:
        """Columns of a table or view, or the definition of a function."""

        object_type = type.lower()
        if object_type not in _OBJECT_QUERIES:
            return OperationResult.failure(ValueError(f"Unsupported object type '{type}'"), schema=schema, name=name)
        try:
            if object_type == "function":
                payload = await self._show_function(name, schema)
            else:
                payload = await self._show_relation(name, object_type, schema)
            if payload is None:
                raise ObjectNotFoundError(
                    f'Object "{name}" of type "{object_type}" does not exist in schema "{schema}"'
                )
        except Exception as exc:
            return self._failure("show_object", exc, schema=schema, name=name, type=object_type)
        return OperationResult.ok(**payload)

    async def _show_relation(self, name: str, object_type: str, schema: str) -> dict[str, Any] | None:
        found = await self._manager.execute_query(
            _OBJECT_QUERIES[object_type] + " AND table_name = $2",
            (schema, name),
        )
        if not found:
            return None
        columns = await self._manager.execute_query(
            "SELECT column_name, data_type, is_nullable, column_default, character_maximum_length, "
            "numeric_precision, numeric_scale "
            "FROM information_schema.columns "
            "WHERE table_schema = $1 AND table_name = $2 "
            "ORDER BY ordinal_position",
            (schema, name),
        )
        return {
            "name": found[0]["name"],
            "type": object_type,
            "columns": [
                {
                    "name": column["column_name"],
                    "type": column["data_type"],
                    "nullable": column["is_nullable"] == "YES",
                    "default": column["column_default"],
                    "maxLength": column["character_maximum_length"],
                    "precision": column["numeric_precision"],
                    "scale": column["numeric_scale"],
                }
                for column in columns
            ],
        }

    async def _show_function(self, name: str, schema: str) -> dict[str, Any] | None:
        rows = await self._manager.execute_query(
            "SELECT p.proname AS name, n.nspname AS schema, "
            "pg_get_functiondef(p.oid) AS definition, "
            "pg_get_function_arguments(p.oid) AS arguments, "
            "t.typname AS return_type "
            "FROM pg_proc p "
            "JOIN pg_namespace n ON n.oid = p.pronamespace "
            "JOIN pg_type t ON t.oid = p.prorettype "
            "WHERE n.nspname = $1 AND p.proname = $2 AND p.prokind = 'f'",
            (schema, name),
        )
        if not rows:
            return None
        row = rows[0]
        return {
            "name": row["name"],
            "schema": row["schema"],
            "type": "function",
            "arguments": row["arguments"],
            "returnType": row["return_type"],
            "definition": row["definition"],
        }

    async def find(
        self,
        table: str,
        schema: str = "public",
        filter: Mapping[str, object] | None = None,
        columns: Iterable[str] | None = None,
        where: str | None = None,
        order_by: str | None = None,
        limit: int = 10,
        save_to_file: bool = False,
        file_path: str | None = None,
        format: ExportFormat | str = ExportFormat.JSON,
    ) -> OperationResult:
        """Select rows from one table by equality filter and optional raw clauses.

        ``limit`` is capped at :data:`MAX_FIND_LIMIT`. With ``save_to_file`` the
        rows go through the streaming export path instead of the payload.
        """

        effective_limit = max(0, min(int(limit), MAX_FIND_LIMIT))
        selected = ", ".join(_quote_identifier(column) for column in columns or ()) or "*"
        clause, request_params = _where_clause(filter, where)
        sql = f"SELECT {selected} FROM {_quote_table(table, schema)}{clause}"
        if order_by and order_by.strip():
            sql += f" ORDER BY {order_by.strip()}"
        request_params.append(effective_limit)
        sql += f" LIMIT ${len(request_params)}"
        if save_to_file:
            result = await self.export(sql, request_params, file_path=file_path, format=format)
            if not result.success:
                return result
            return OperationResult.ok(**result.data, schema=schema, table=table)
        request = QueryRequest.build(sql, request_params)
        try:
            rows = await self._manager.execute_query(request.sql, request.params)
        except Exception as exc:
            return self._failure("find", exc, schema=schema, table=table, query=request.excerpt())
        return OperationResult.ok(schema=schema, table=table, records=rows, count=len(rows), limit=effective_limit)

    async def select(
        self,
        sql: str,
        params: Iterable[object] | None = None,
        save_to_file: bool = False,
        file_path: str | None = None,
        format: ExportFormat | str = ExportFormat.JSON,
    ) -> OperationResult:
        """Run a read query inside a read-only transaction regardless of session mode."""

        if not is_read_query(sql):
            return OperationResult.failure(
                ReadOnlyViolationError("The select operation only accepts read queries"),
                query=QueryRequest(sql).excerpt(),
            )
        if save_to_file:
            return await self.export(sql, params, file_path=file_path, format=format, force_readonly=True)
        request = QueryRequest.build(sql, params, force_readonly=True)
        try:
            rows = await self._manager.execute_query(request.sql, request.params, force_readonly=True)
        except Exception as exc:
            return self._failure("select", exc, query=request.excerpt())
        return OperationResult.ok(query=request.sql, records=rows, count=len(rows))

    @staticmethod
    def _failure(operation: str, exc: BaseException, **context: Any) -> OperationResult:
        if isinstance(exc, PgStreamError):
            LOG.warning("Operation %s failed: %s", operation, exc)
        else:
            LOG.exception("Operation %s failed unexpectedly", operation)
        return OperationResult.failure(exc, **context)


def _quote_identifier(name: str) -> str:
    return exp.to_identifier(name, quoted=True).sql(dialect="postgres")


def _quote_table(table: str, schema: str) -> str:
    return exp.table_(table, db=schema, quoted=True).sql(dialect="postgres")


def _where_clause(filter: Mapping[str, object] | None, where: str | None) -> tuple[str, list[object]]:
    """Equality filters bound as ``$n`` parameters, ANDed with a raw condition."""

    conditions: list[str] = []
    params: list[object] = []
    for column, value in (filter or {}).items():
        params.append(value)
        conditions.append(f"{_quote_identifier(column)} = ${len(params)}")
    if where and where.strip():
        conditions.append(where.strip())
    if not conditions:
        return "", params
    return " WHERE " + " AND ".join(conditions), params


__all__ = ["MAX_FIND_LIMIT", "OperationResult", "Operations", "SERVICE_NAME"]
