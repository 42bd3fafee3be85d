"""Storage Package"""

from .result_store import (
    ResultStore,
    StorageError,
    DatabaseConnectionError,
    parse_connection_string
)

__all__ = [
    "ResultStore",
    "StorageError",
    "DatabaseConnectionError",
    "parse_connection_string"
]
