"""Readonly-aware PostgreSQL query execution with streaming file export."""

from __future__ import annotations

__version__ = "0.1.0"

from .analyzer import CursorAnalyzer, is_read_query, supports_cursor
from .config import ServerConfig, load_config
from .connections import ConnectionManager
from .coordinator import StreamingQueryCoordinator
from .errors import (
    ConfigurationError,
    DatabaseConnectionError,
    ExportInterruptedError,
    FileIOError,
    InvoluntaryDisconnectError,
    NotConnectedError,
    PgStreamError,
    QueryExecutionError,
    ReadOnlyViolationError,
    StreamingNotSupportedError,
)
from .export import ExportSink, JsonArrayTransform, JsonLinesTransform, generate_export_path
from .models import (
    ClassificationKind,
    ConnectionInfo,
    CursorClassification,
    ExportFormat,
    ExportResult,
    QueryRequest,
)
from .operations import OperationResult, Operations

__all__ = [
    "ClassificationKind",
    "ConfigurationError",
    "ConnectionInfo",
    "ConnectionManager",
    "CursorAnalyzer",
    "CursorClassification",
    "DatabaseConnectionError",
    "ExportFormat",
    "ExportInterruptedError",
    "ExportResult",
    "ExportSink",
    "FileIOError",
    "InvoluntaryDisconnectError",
    "JsonArrayTransform",
    "JsonLinesTransform",
    "NotConnectedError",
    "OperationResult",
    "Operations",
    "PgStreamError",
    "QueryExecutionError",
    "QueryRequest",
    "ReadOnlyViolationError",
    "ServerConfig",
    "StreamingNotSupportedError",
    "StreamingQueryCoordinator",
    "__version__",
    "generate_export_path",
    "is_read_query",
    "load_config",
    "supports_cursor",
]
