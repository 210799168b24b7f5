"""Exception hierarchy shared by the connection, export, and operation layers."""

from __future__ import annotations


class PgStreamError(RuntimeError):
    """Base class for every error raised by pgstream."""


class ConfigurationError(PgStreamError):
    """Raised when the environment lacks a usable configuration."""


class DatabaseConnectionError(PgStreamError, ConnectionError):
    """Raised when the pool cannot be established or fails its health check."""


class NotConnectedError(PgStreamError):
    """Raised when a query is attempted without an active session."""

    def __init__(self, message: str = "Not connected to PostgreSQL. Please connect first.") -> None:
        super().__init__(message)


class QueryExecutionError(PgStreamError):
    """Raised when the engine rejects a statement."""

    def __init__(self, message: str, *, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class ReadOnlyViolationError(QueryExecutionError):
    """Raised when a write is attempted while readonly mode is in force."""


class StreamingNotSupportedError(PgStreamError):
    """Raised when an export is requested for a statement that cannot use a cursor."""


class FileIOError(PgStreamError):
    """Raised when the export destination cannot be created or written."""

    def __init__(self, message: str, *, file_path: str | None = None) -> None:
        super().__init__(message)
        self.file_path = file_path


class InvoluntaryDisconnectError(PgStreamError):
    """Recorded when a pooled connection drops outside an explicit disconnect."""


class ObjectNotFoundError(PgStreamError):
    """Raised when a catalog lookup finds no matching object."""


class ExportInterruptedError(PgStreamError):
    """Raised when a streaming export fails after the destination was opened."""

    def __init__(self, message: str, *, file_path: str, rows_written: int) -> None:
        super().__init__(message)
        self.file_path = file_path
        self.rows_written = rows_written


__all__ = [
    "ConfigurationError",
    "DatabaseConnectionError",
    "ExportInterruptedError",
    "FileIOError",
    "InvoluntaryDisconnectError",
    "NotConnectedError",
    "ObjectNotFoundError",
    "PgStreamError",
    "QueryExecutionError",
    "ReadOnlyViolationError",
    "StreamingNotSupportedError",
]
