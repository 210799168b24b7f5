"""Export decision policy: stream when the cursor allows it, buffer when forced."""

from __future__ import annotations

import logging
from typing import Sequence

from .analyzer import CursorAnalyzer, is_read_query
from .connections import ConnectionManager
from .errors import (
    ExportInterruptedError,
    NotConnectedError,
    PgStreamError,
    QueryExecutionError,
    ReadOnlyViolationError,
    StreamingNotSupportedError,
)
from .export import ExportSink, generate_export_path
from .models import ExportFormat, ExportResult, QueryParam

LOG = logging.getLogger(__name__)


class StreamingQueryCoordinator:
    """Moves query results into files without materializing eligible results."""

    def __init__(
        self,
        manager: ConnectionManager,
        *,
        analyzer: CursorAnalyzer | None = None,
        export_dir: str | None = None,
        buffer_size: int | None = None,
    ) -> None:
        self._manager = manager
        self._analyzer = analyzer or CursorAnalyzer()
        self._export_dir = export_dir
        self._buffer_size = buffer_size

    def resolve_path(self, path: str | None, fmt: ExportFormat) -> str:
        if path:
            return path
        return generate_export_path(fmt, self._export_dir)

    async def export_to_file(
        self,
        sql: str,
        params: Sequence[QueryParam] = (),
        path: str | None = None,
        format: ExportFormat | str = ExportFormat.JSONL,
        force_save_to_file: bool = False,
        force_readonly: bool | None = None,
    ) -> ExportResult:
        fmt = ExportFormat(format)
        if not self._manager.is_connected:
            raise NotConnectedError()
        readonly = self._manager.readonly if force_readonly is None else force_readonly
        if readonly and not is_read_query(sql):
            raise ReadOnlyViolationError("Cannot perform write operation in read-only mode")

        classification = self._analyzer.classify(sql)
        target = self.resolve_path(path, fmt)
        if classification.eligible:
            return await self._stream(sql, params, target, fmt, force_readonly)
        if not force_save_to_file:
            raise StreamingNotSupportedError(
                "This query does not support cursor-based streaming "
                f"({classification.reason or classification.kind.value}). "
                "Set force_save_to_file=True to buffer the full result in memory "
                "before writing it, at the cost of higher peak memory usage."
            )
        LOG.info("Buffering non-streamable result for export (%s)", classification.reason)
        return await self._buffer(sql, params, target, fmt, force_readonly)

    async def _stream(
        self,
        sql: str,
        params: Sequence[QueryParam],
        target: str,
        fmt: ExportFormat,
        force_readonly: bool | None = None,
    ) -> ExportResult:
        sink = await ExportSink.open(target, fmt, buffer_size=self._buffer_size)
        try:
            await self._manager.stream_query(sql, params, sink.write, force_readonly=force_readonly)
        except (PgStreamError, OSError, ValueError) as exc:
            if sink.row_count == 0 and isinstance(exc, (QueryExecutionError, NotConnectedError)):
                # Rejected before any row arrived: surface the engine error, keep no file.
                await sink.discard()
                raise
            await sink.abort()
            raise ExportInterruptedError(
                f"Export to '{target}' failed after {sink.row_count} row(s): {exc}",
                file_path=target,
                rows_written=sink.row_count,
            ) from exc
        except BaseException:
            await sink.abort()
            raise
        return await sink.finish()

    async def _buffer(
        self,
        sql: str,
        params: Sequence[QueryParam],
        target: str,
        fmt: ExportFormat,
        force_readonly: bool | None = None,
    ) -> ExportResult:
        rows = await self._manager.execute_query(sql, params, force_readonly=force_readonly)
        sink = await ExportSink.open(target, fmt, buffer_size=self._buffer_size)
        async with sink:
            for row in rows:
                await sink.write(row)
            result = await sink.finish()
        return ExportResult(
            file_path=result.file_path,
            row_count=result.row_count,
            format=result.format,
            streamed=False,
        )


__all__ = ["StreamingQueryCoordinator"]
