"""Tests for the export decision policy."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import asyncpg
import pytest

from pgstream.connections import ConnectionManager
from pgstream.coordinator import StreamingQueryCoordinator
from pgstream.errors import (
    ExportInterruptedError,
    NotConnectedError,
    QueryExecutionError,
    ReadOnlyViolationError,
    StreamingNotSupportedError,
)
from pgstream.models import ExportFormat

if TYPE_CHECKING:
    from conftest import PoolFactory


async def _connected(env: dict[str, str], *, readonly: bool = True) -> ConnectionManager:
    manager = ConnectionManager(env=env)
    await manager.connect(readonly=readonly)
    return manager


@pytest.mark.anyio
async def test_export_requires_session(tmp_path: Path) -> None:
    coordinator = StreamingQueryCoordinator(ConnectionManager(env={}))

    with pytest.raises(NotConnectedError):
        await coordinator.export_to_file("SELECT 1", path=str(tmp_path / "out.jsonl"))


@pytest.mark.anyio
async def test_eligible_query_streams_to_jsonl(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "users.jsonl"

    result = await coordinator.export_to_file("SELECT id, name FROM users", path=str(target))

    assert result.file_path == str(target)
    assert result.row_count == 2
    assert result.format is ExportFormat.JSONL
    assert result.streamed is True
    assert target.read_text(encoding="utf-8") == '{"id":1,"name":"a"}\n{"id":2,"name":"b"}\n'
    assert pool_factory.latest.connections[0].transactions == [True]
    assert pool_factory.latest.in_use == 0


@pytest.mark.anyio
async def test_streaming_export_with_tiny_buffer_keeps_every_row(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    total = 5_000
    pool_factory.rows = [{"id": index, "note": "row"} for index in range(total)]
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager, buffer_size=8)
    target = tmp_path / "big.jsonl"

    result = await coordinator.export_to_file("SELECT * FROM events", path=str(target))

    lines = target.read_text(encoding="utf-8").splitlines()
    assert result.row_count == total
    assert pool_factory.rows_pulled == total
    assert len(lines) == total
    assert [json.loads(line)["id"] for line in lines[:3]] == [0, 1, 2]


@pytest.mark.anyio
async def test_generated_path_uses_export_dir_and_extension(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"id": 1}]
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager, export_dir=str(tmp_path))

    result = await coordinator.export_to_file("SELECT 1 AS id", format="json")

    assert Path(result.file_path).parent == tmp_path
    assert result.file_path.endswith(".json")
    assert json.loads(Path(result.file_path).read_text(encoding="utf-8")) == [{"id": 1}]


@pytest.mark.anyio
async def test_empty_result_as_json_is_empty_array(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "none.json"

    result = await coordinator.export_to_file("SELECT * FROM users WHERE false", path=str(target), format="json")

    assert result.row_count == 0
    assert target.read_text(encoding="utf-8") == "[]"


@pytest.mark.anyio
async def test_readonly_prefilter_rejects_writes_before_execution(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    manager = await _connected(env, readonly=True)
    coordinator = StreamingQueryCoordinator(manager)

    with pytest.raises(ReadOnlyViolationError):
        await coordinator.export_to_file("DELETE FROM users RETURNING *", path=str(tmp_path / "x.jsonl"))

    assert pool_factory.statements == ["SELECT 1"]
    assert not (tmp_path / "x.jsonl").exists()


@pytest.mark.anyio
async def test_non_streamable_statement_requires_force(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"id": 7, "name": "new"}]
    manager = await _connected(env, readonly=False)
    coordinator = StreamingQueryCoordinator(manager)
    sql = "INSERT INTO users(name) VALUES ('new') RETURNING id, name"
    target = tmp_path / "inserted.json"

    with pytest.raises(StreamingNotSupportedError) as excinfo:
        await coordinator.export_to_file(sql, path=str(target), format="json")

    assert "force_save_to_file" in str(excinfo.value)
    assert not target.exists()

    result = await coordinator.export_to_file(sql, path=str(target), format="json", force_save_to_file=True)

    assert result.streamed is False
    assert result.row_count == 1
    assert json.loads(target.read_text(encoding="utf-8")) == [{"id": 7, "name": "new"}]


@pytest.mark.anyio
async def test_forced_export_in_readonly_mode_runs_read_only_transaction(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"TimeZone": "UTC"}]
    manager = await _connected(env, readonly=True)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "tz.jsonl"

    result = await coordinator.export_to_file("SHOW timezone", path=str(target), force_save_to_file=True)

    assert result.row_count == 1
    assert pool_factory.latest.connections[0].transactions == [True]
    assert target.read_text(encoding="utf-8") == '{"TimeZone":"UTC"}\n'


@pytest.mark.anyio
async def test_forced_export_failure_creates_no_file(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    manager = await _connected(env, readonly=True)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "never.jsonl"
    pool_factory.query_error = QueryExecutionError("boom")

    with pytest.raises(QueryExecutionError):
        await coordinator.export_to_file("SHOW timezone", path=str(target), force_save_to_file=True)

    assert not target.exists()


@pytest.mark.anyio
async def test_mid_stream_failure_reports_partial_count(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"id": index} for index in range(10)]
    pool_factory.cursor_error_after = 3
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "partial.jsonl"

    with pytest.raises(ExportInterruptedError) as excinfo:
        await coordinator.export_to_file("SELECT id FROM big_table", path=str(target))

    error = excinfo.value
    assert error.rows_written == 3
    assert error.file_path == str(target)
    assert isinstance(error.__cause__, QueryExecutionError)
    assert "canceling statement" in str(error)
    assert len(target.read_text(encoding="utf-8").splitlines()) == 3
    assert pool_factory.latest.in_use == 0
    assert manager.is_connected is True


@pytest.mark.anyio
async def test_commented_select_passes_readonly_prefilter(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.rows = [{"id": 1}]
    manager = await _connected(env, readonly=True)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "report.jsonl"

    result = await coordinator.export_to_file("-- monthly report\nSELECT id FROM users", path=str(target))

    assert result.row_count == 1
    assert target.read_text(encoding="utf-8") == '{"id":1}\n'


@pytest.mark.anyio
async def test_engine_readonly_rejection_passes_through_without_file(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.query_error = asyncpg.exceptions.ReadOnlySQLTransactionError(
        "cannot execute DELETE in a read-only transaction"
    )
    manager = await _connected(env, readonly=True)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "deleted.json"

    with pytest.raises(ReadOnlyViolationError) as excinfo:
        await coordinator.export_to_file(
            "WITH d AS (DELETE FROM users RETURNING *) SELECT * FROM d",
            path=str(target),
            format="json",
        )

    assert excinfo.value.sqlstate == "25006"
    assert not target.exists()
    assert pool_factory.latest.in_use == 0
    assert manager.is_connected is True


@pytest.mark.anyio
async def test_engine_error_before_first_row_removes_file(
    pool_factory: PoolFactory, env: dict[str, str], tmp_path: Path
) -> None:
    pool_factory.query_error = asyncpg.exceptions.UndefinedTableError('relation "missing" does not exist')
    manager = await _connected(env)
    coordinator = StreamingQueryCoordinator(manager)
    target = tmp_path / "missing.jsonl"

    with pytest.raises(QueryExecutionError) as excinfo:
        await coordinator.export_to_file("SELECT * FROM missing", path=str(target))

    assert not isinstance(excinfo.value, ExportInterruptedError)
    assert excinfo.value.sqlstate == "42P01"
    assert not target.exists()
