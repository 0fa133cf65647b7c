"""Storage for Joule traces."""

from joule.storage.traces import SQLiteTraceRepository, TraceRepository

__all__ = ["TraceRepository", "SQLiteTraceRepository"]
