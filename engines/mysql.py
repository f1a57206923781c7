"""MySQL/MariaDB engine: metadata through the mysql CLI, dumps through mysqldump."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess

from config import Datasource
from . import Engine, GTIDUnsupportedError, QueryError

log = logging.getLogger(__name__)

DEFAULT_DUMP_ARGS = "--single-transaction --quick --routines --triggers --events"

# stderr fragments that make a failed mysqldump run fatal, even with output written.
FATAL_MARKERS = (
    "access denied",
    "unknown database",
    "can't connect",
    "connection refused",
    "lost connection",
    "unknown mysql server host",
    "server has gone away",
    "couldn't execute",
    "got errno",
)


def _quote_literal(value: str) -> str:
    """Quote *value* as a MySQL string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class MySQLEngine(Engine):

    fatal_markers = FATAL_MARKERS

    # -- private helpers --------------------------------------------------

    @staticmethod
    def _mysql_env(ds: Datasource) -> dict[str, str]:
        """Build a minimal environment dict for the mysql client tools.

        Only PATH and locale variables pass through; the password travels
        in MYSQL_PWD so it never shows up in argv.
        """
        env: dict[str, str] = {}
        for key in ("PATH", "HOME", "LANG", "LC_ALL", "LC_CTYPE", "TZ"):
            val = os.environ.get(key)
            if val is not None:
                env[key] = val
        if ds.password:
            env["MYSQL_PWD"] = ds.password
        return env

    @staticmethod
    def _connection_args(ds: Datasource) -> list[str]:
        args = [f"--host={ds.host}", f"--port={ds.port}"]
        if ds.user:
            args.append(f"--user={ds.user}")
        return args

    def _query(self, ds: Datasource, sql: str, timeout: float | None) -> list[str]:
        """Run *sql* in batch mode and return the output rows."""
        cmd = [
            ds.options.get("mysql_bin", "mysql"),
            *self._connection_args(ds),
            "--batch", "--skip-column-names",
            "-e", sql,
        ]
        try:
            result = subprocess.run(
                cmd,
                env=self._mysql_env(ds),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise TimeoutError(f"Query timed out after {timeout}s: {sql}") from None
        except OSError as exc:
            raise QueryError(f"Cannot run mysql client: {exc}") from exc
        if result.returncode != 0:
            raise QueryError(result.stderr.strip() or f"mysql exited with {result.returncode}")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def _scalar(self, ds: Datasource, sql: str, timeout: float | None) -> int:
        rows = self._query(ds, sql, timeout)
        if not rows or rows[0].strip().upper() == "NULL":
            return 0
        try:
            return int(float(rows[0].strip()))
        except ValueError:
            raise QueryError(f"Unexpected query result {rows[0]!r} for: {sql}") from None

    # -- Engine interface -------------------------------------------------

    def list_databases(self, ds: Datasource, timeout: float | None = None) -> list[str]:
        return self._query(ds, "SHOW DATABASES", timeout)

    def database_size(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COALESCE(SUM(data_length + index_length), 0) "
            f"FROM information_schema.TABLES WHERE table_schema = {_quote_literal(database)}",
            timeout,
        )

    def table_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COUNT(*) FROM information_schema.TABLES "
            f"WHERE table_schema = {_quote_literal(database)} AND table_type = 'BASE TABLE'",
            timeout,
        )

    def procedure_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COUNT(*) FROM information_schema.ROUTINES "
            f"WHERE routine_schema = {_quote_literal(database)} AND routine_type = 'PROCEDURE'",
            timeout,
        )

    def function_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COUNT(*) FROM information_schema.ROUTINES "
            f"WHERE routine_schema = {_quote_literal(database)} AND routine_type = 'FUNCTION'",
            timeout,
        )

    def view_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COUNT(*) FROM information_schema.VIEWS "
            f"WHERE table_schema = {_quote_literal(database)}",
            timeout,
        )

    def user_grant_count(self, ds: Datasource, database: str, timeout: float | None = None) -> int:
        return self._scalar(
            ds,
            "SELECT COUNT(DISTINCT grantee) FROM information_schema.SCHEMA_PRIVILEGES "
            f"WHERE table_schema = {_quote_literal(database)}",
            timeout,
        )

    def server_version(self, ds: Datasource, timeout: float | None = None) -> str:
        rows = self._query(ds, "SELECT VERSION()", timeout)
        return rows[0].strip() if rows else ""

    def gtid_position(self, ds: Datasource, timeout: float | None = None) -> str:
        # MariaDB exposes gtid_current_pos, MySQL exposes gtid_executed.
        last_error = ""
        for variable in ("gtid_current_pos", "gtid_executed"):
            try:
                rows = self._query(ds, f"SELECT @@GLOBAL.{variable}", timeout)
            except QueryError as exc:
                message = str(exc).lower()
                if "access denied" in message:
                    raise GTIDUnsupportedError(f"Permission denied reading {variable}: {exc}") from exc
                if "unknown system variable" in message:
                    last_error = str(exc)
                    continue
                raise
            position = rows[0].strip() if rows else ""
            if not position or position.upper() == "NULL":
                raise GTIDUnsupportedError(f"{variable} is empty; GTID is not in use")
            return position
        raise GTIDUnsupportedError(f"Server does not support GTID: {last_error}")

    def dump_command(self, ds: Datasource, databases: list[str] | None) -> list[str]:
        cmd = [ds.options.get("mysqldump_bin", "mysqldump"), *self._connection_args(ds)]
        cmd.extend(shlex.split(str(ds.options.get("mysqldump_args", DEFAULT_DUMP_ARGS))))
        if databases is None:
            cmd.append("--all-databases")
        else:
            cmd.append("--databases")
            cmd.extend(databases)
        return cmd

    def dump_env(self, ds: Datasource) -> dict[str, str]:
        return self._mysql_env(ds)


def create() -> MySQLEngine:
    return MySQLEngine()
