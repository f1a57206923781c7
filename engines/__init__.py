"""Database engine interface and factory."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod

from config import ConfigError, Datasource


class QueryError(Exception):
    """Raised when a metadata query against the server fails."""


class GTIDUnsupportedError(Exception):
    """Raised when the server cannot report a GTID position (missing or forbidden)."""


class Engine(ABC):
    """Abstract base for database engine backends.

    Query methods accept a per-call timeout in seconds and raise QueryError
    or TimeoutError on failure.
    """

    fatal_markers: tuple[str, ...] = ()

    @abstractmethod
    def list_databases(self, ds: Datasource, timeout: float | None = None) -> list[str]:
        """Return every database name visible to the configured user."""

    @abstractmethod
    def database_size(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Return data + index size in bytes."""

    @abstractmethod
    def table_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Count base tables."""

    @abstractmethod
    def procedure_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Count stored procedures."""

    @abstractmethod
    def function_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Count stored functions."""

    @abstractmethod
    def view_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Count views."""

    @abstractmethod
    def user_grant_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        """Count distinct grantees with privileges on the database."""

    @abstractmethod
    def server_version(self, ds: Datasource, timeout: float | None = None) -> str:
        """Return the server version string."""

    @abstractmethod
    def gtid_position(self, ds: Datasource, timeout: float | None = None) -> str:
        """Return the current GTID position; raise GTIDUnsupportedError if unavailable."""

    @abstractmethod
    def dump_command(self, ds: Datasource, databases: list[str] | None) -> list[str]:
        """Return the dump argv. databases=None dumps every database."""

    @abstractmethod
    def dump_env(self, ds: Datasource) -> dict[str, str]:
        """Return the environment for the dump process (carries credentials)."""

    def mask_command(self, argv: list[str]) -> list[str]:
        """Return argv with any inline password replaced, for logging."""
        masked = []
        for arg in argv:
            if arg.startswith("--password="):
                arg = "--password=****"
            elif arg.startswith("-p") and len(arg) > 2:
                arg = "-p****"
            masked.append(arg)
        return masked


# Map of engine type names to module names within this package.
_ENGINE_TYPES = {
    "mysql": "mysql",
    "mariadb": "mysql",
}


def create_engine(engine_type: str) -> Engine:
    """Create an Engine instance by type name.

    The engine_type must match a key in _ENGINE_TYPES (e.g. 'mysql').
    """
    if engine_type not in _ENGINE_TYPES:
        raise ConfigError(
            f"Unknown engine type '{engine_type}'. "
            f"Available: {', '.join(_ENGINE_TYPES)}"
        )

    module = importlib.import_module(f".{_ENGINE_TYPES[engine_type]}", package=__name__)
    return module.create()
