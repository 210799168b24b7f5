"""Row encoders and the file sink used by exports."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import secrets
import tempfile
import time
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Protocol

import aiofiles
import aiofiles.os
import asyncpg
from pydantic_core import PydanticSerializationError, to_jsonable_python

from .errors import FileIOError
from .models import ExportFormat, ExportResult, Row

LOG = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    """Convert a driver value into plain JSON-compatible Python objects.

    Non-finite floats become ``None``, bytea becomes PostgreSQL hex text
    (``\\x...``), ranges become their bounds and anything pydantic cannot
    serialize falls back to ``str(value)``.
    """

    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (Mapping, asyncpg.Record)):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    if isinstance(value, asyncpg.BitString):
        return value.as_string()
    if isinstance(value, asyncpg.Range):
        return {
            "lower": to_jsonable(value.lower),
            "upper": to_jsonable(value.upper),
            "lowerInc": value.lower_inc,
            "upperInc": value.upper_inc,
            "empty": value.isempty,
        }
    try:
        converted = to_jsonable_python(value)
    except PydanticSerializationError:
        return str(value)
    if isinstance(converted, float) and not math.isfinite(converted):
        return None
    return converted


def encode_row(row: Row) -> str:
    """Encode one row as compact single-line JSON."""

    return json.dumps(
        to_jsonable(row),
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


class RowTransform(Protocol):
    """Turns rows into text chunks; ``finish`` returns the closing chunk."""

    rows_encoded: int

    def encode(self, row: Row) -> str: ...

    def finish(self) -> str: ...


class JsonLinesTransform:
    """One JSON object per line, no state between rows."""

    def __init__(self) -> None:
        self.rows_encoded = 0

    def encode(self, row: Row) -> str:
        self.rows_encoded += 1
        return encode_row(row) + "\n"

    def finish(self) -> str:
        return ""


class JsonArrayTransform:
    """A single JSON array emitted incrementally."""

    def __init__(self) -> None:
        self.rows_encoded = 0

    def encode(self, row: Row) -> str:
        prefix = "[\n" if self.rows_encoded == 0 else ",\n"
        self.rows_encoded += 1
        return prefix + encode_row(row)

    def finish(self) -> str:
        if self.rows_encoded == 0:
            return "[]"
        return "\n]"


def create_transform(fmt: ExportFormat | str) -> RowTransform:
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.JSON:
        return JsonArrayTransform()
    return JsonLinesTransform()


def encode_rows(rows: Iterable[Row], fmt: ExportFormat | str = ExportFormat.JSONL) -> Iterator[str]:
    """Yield the text chunks for ``rows`` followed by the closing chunk."""

    transform = create_transform(fmt)
    for row in rows:
        yield transform.encode(row)
    tail = transform.finish()
    if tail:
        yield tail


def generate_export_path(fmt: ExportFormat | str = ExportFormat.JSONL, directory: str | None = None) -> str:
    """Collision-resistant scratch path with an extension matching ``fmt``."""

    fmt = ExportFormat(fmt)
    base = directory or tempfile.gettempdir()
    name = f"postgres-{int(time.time() * 1000)}-{secrets.token_hex(4)}.{fmt.extension}"
    return str(Path(base) / name)


class ExportSink:
    """Owns the destination file and row counter for one export job."""

    def __init__(self, path: str, fmt: ExportFormat, handle: Any, transform: RowTransform) -> None:
        self._path = path
        self._format = fmt
        self._handle = handle
        self._transform = transform
        self._row_count = 0
        self._closed = False

    @classmethod
    async def open(
        cls,
        path: str | os.PathLike[str],
        fmt: ExportFormat | str = ExportFormat.JSONL,
        *,
        buffer_size: int | None = None,
    ) -> ExportSink:
        """Create parent directories and open ``path`` for writing."""

        fmt = ExportFormat(fmt)
        target = os.fspath(path)
        parent = os.path.dirname(target)
        try:
            if parent:
                await aiofiles.os.makedirs(parent, exist_ok=True)
            kwargs: dict[str, object] = {"encoding": "utf-8"}
            if buffer_size is not None:
                kwargs["buffering"] = buffer_size
            handle = await aiofiles.open(target, "w", **kwargs)
        except OSError as exc:
            raise FileIOError(f"Failed to open export file '{target}': {exc}", file_path=target) from exc
        LOG.debug("Opened %s export at %s", fmt.value, target)
        return cls(target, fmt, handle, create_transform(fmt))

    @property
    def file_path(self) -> str:
        return self._path

    @property
    def format(self) -> ExportFormat:
        return self._format

    @property
    def row_count(self) -> int:
        return self._row_count

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, row: Row) -> None:
        """Encode and write one row; returns once the file accepted it."""

        if self._closed:
            raise FileIOError(f"Export file '{self._path}' is already closed.", file_path=self._path)
        chunk = self._transform.encode(row)
        await self._write(chunk)
        self._row_count += 1

    async def finish(self) -> ExportResult:
        """Write the closing token, flush to disk and close the file."""

        if self._closed:
            raise FileIOError(f"Export file '{self._path}' is already closed.", file_path=self._path)
        try:
            tail = self._transform.finish()
            if tail:
                await self._write(tail)
            await self._handle.flush()
            await asyncio.to_thread(os.fsync, self._handle.fileno())
        except OSError as exc:
            await self.abort()
            raise FileIOError(f"Failed to finalize export file '{self._path}': {exc}", file_path=self._path) from exc
        self._closed = True
        try:
            await self._handle.close()
        except OSError as exc:
            raise FileIOError(f"Failed to close export file '{self._path}': {exc}", file_path=self._path) from exc
        LOG.info("Exported %d row(s) to %s", self._row_count, self._path)
        return ExportResult(file_path=self._path, row_count=self._row_count, format=self._format)

    async def abort(self) -> None:
        """Close the handle without completing the encoding."""

        if self._closed:
            return
        self._closed = True
        try:
            await self._handle.close()
        except OSError as exc:  # pragma: no cover - best effort cleanup
            LOG.warning("Failed to close aborted export %s: %s", self._path, exc)
        LOG.warning("Export to %s aborted after %d row(s)", self._path, self._row_count)

    async def discard(self) -> None:
        """Abort and remove the destination file."""

        await self.abort()
        try:
            await aiofiles.os.remove(self._path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise FileIOError(f"Failed to remove export file '{self._path}': {exc}", file_path=self._path) from exc

    async def _write(self, chunk: str) -> None:
        try:
            await self._handle.write(chunk)
        except OSError as exc:
            raise FileIOError(f"Failed to write export file '{self._path}': {exc}", file_path=self._path) from exc

    async def __aenter__(self) -> ExportSink:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        if exc_type is not None:
            await self.abort()


__all__ = [
    "ExportSink",
    "JsonArrayTransform",
    "JsonLinesTransform",
    "RowTransform",
    "create_transform",
    "encode_row",
    "encode_rows",
    "generate_export_path",
    "to_jsonable",
]
