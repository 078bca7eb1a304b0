"""PostgreSQL connection layer: session setup and catalog helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import psycopg2
import psycopg2.extras
from psycopg2 import sql

if TYPE_CHECKING:
    from psycopg2.extensions import connection as PgConnection

logger = logging.getLogger(__name__)

APPLICATION_NAME = "autoreindex"

# Key for the session-level advisory lock held while a database is processed.
# Any two invocations against the same database compete for the same key.
ADVISORY_LOCK_KEY = 0x61726978  # "arix"

_LIST_DATABASES_SQL = """\
SELECT datname
FROM pg_catalog.pg_database
WHERE NOT datistemplate
  AND datallowconn
ORDER BY datname
"""


class DatabaseError(Exception):
    """Any failure reported by the server or the driver."""


@dataclass(frozen=True)
class ConnectionParams:
    """Where and as whom to connect. ``None`` leaves the libpq default."""

    host: str | None = None
    port: int | None = None
    username: str | None = None
    maintenance_db: str = "postgres"
    connect_timeout: int = 10

    def dsn_kwargs(self, dbname: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "dbname": dbname,
            "connect_timeout": self.connect_timeout,
            "application_name": APPLICATION_NAME,
        }
        if self.host:
            kwargs["host"] = self.host
        if self.port:
            kwargs["port"] = self.port
        if self.username:
            kwargs["user"] = self.username
        return kwargs


class Database:
    """One autocommit connection to one database.

    Autocommit is required: ``REINDEX ... CONCURRENTLY`` and
    ``DROP INDEX CONCURRENTLY`` refuse to run inside a transaction block.
    Every driver error is re-raised as :class:`DatabaseError`.
    """

    def __init__(self, conn: PgConnection, name: str) -> None:
        self._conn = conn
        self.name = name

    # -- generic access -----------------------------------------------------

    def fetch_all(self, query: str | sql.Composable, params: Any = None) -> list[dict[str, Any]]:
        try:
            with self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as exc:
            raise DatabaseError(_describe(exc)) from exc

    def fetch_value(self, query: str | sql.Composable, params: Any = None) -> Any:
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
        except psycopg2.Error as exc:
            raise DatabaseError(_describe(exc)) from exc
        return row[0] if row else None

    def execute(self, query: str | sql.Composable, params: Any = None) -> None:
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
        except psycopg2.Error as exc:
            raise DatabaseError(_describe(exc)) from exc

    def close(self) -> None:
        try:
            self._conn.close()
        except psycopg2.Error as exc:
            logger.debug("Error while closing connection to %s: %s", self.name, exc)

    # -- session --------------------------------------------------------------

    def configure_session(self, lock_timeout_ms: int) -> None:
        """Disable statement_timeout and keep lock waits short."""
        self.execute("SET statement_timeout = 0")
        self.execute("SELECT set_config('lock_timeout', %s, false)", (f"{lock_timeout_ms}ms",))

    def set_parallel_workers(self, workers: int) -> None:
        # max_parallel_maintenance_workers exists since PostgreSQL 11.
        if workers <= 0 or self.server_version_num() < 110000:
            return
        self.execute(
            "SELECT set_config('max_parallel_maintenance_workers', %s, false)",
            (str(workers),),
        )

    # -- catalog helpers ------------------------------------------------------

    def ping(self) -> None:
        self.fetch_value("SELECT 1")

    def is_in_recovery(self) -> bool:
        return bool(self.fetch_value("SELECT pg_catalog.pg_is_in_recovery()"))

    def server_version_num(self) -> int:
        return int(self.fetch_value("SELECT current_setting('server_version_num')"))

    def index_size(self, schema: str, name: str) -> int:
        """Current on-disk size of an index in bytes."""
        value = self.fetch_value(
            "SELECT pg_catalog.pg_relation_size(c.oid) "
            "FROM pg_catalog.pg_class c "
            "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
            "WHERE n.nspname = %s AND c.relname = %s AND c.relkind = 'i'",
            (schema, name),
        )
        if value is None:
            raise DatabaseError(f"index {schema}.{name} does not exist")
        return int(value)

    def index_oid(self, schema: str, name: str) -> int | None:
        value = self.fetch_value(
            "SELECT c.oid FROM pg_catalog.pg_class c "
            "JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace "
            "WHERE n.nspname = %s AND c.relname = %s AND c.relkind = 'i'",
            (schema, name),
        )
        return int(value) if value is not None else None

    def list_databases(self) -> list[str]:
        return [row["datname"] for row in self.fetch_all(_LIST_DATABASES_SQL)]

    def has_extension(self, name: str) -> bool:
        return bool(
            self.fetch_value(
                "SELECT EXISTS (SELECT 1 FROM pg_catalog.pg_extension WHERE extname = %s)",
                (name,),
            )
        )

    def extension_schema(self, name: str) -> str | None:
        """Schema an extension is installed in, or ``None`` when it is absent."""
        value = self.fetch_value(
            "SELECT n.nspname FROM pg_catalog.pg_extension e "
            "JOIN pg_catalog.pg_namespace n ON n.oid = e.extnamespace "
            "WHERE e.extname = %s",
            (name,),
        )
        return str(value) if value is not None else None

    def ensure_extension(self, name: str) -> None:
        """Create *name* unless it is already installed."""
        if self.has_extension(name):
            return
        self.execute(sql.SQL("CREATE EXTENSION IF NOT EXISTS {}").format(sql.Identifier(name)))
        logger.info("Created extension %s in database %s", name, self.name)

    def try_advisory_lock(self) -> bool:
        return bool(self.fetch_value("SELECT pg_try_advisory_lock(%s)", (ADVISORY_LOCK_KEY,)))

    def advisory_unlock(self) -> None:
        self.fetch_value("SELECT pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))


def _describe(exc: psycopg2.Error) -> str:
    message = (exc.pgerror or str(exc)).strip()
    return " ".join(message.split()) or exc.__class__.__name__


def open_db(params: ConnectionParams, dbname: str, *, lock_timeout_ms: int = 1000) -> Database:
    """Connect to *dbname* and prepare the session for maintenance work."""
    try:
        conn = psycopg2.connect(**params.dsn_kwargs(dbname))
    except psycopg2.Error as exc:
        raise DatabaseError(_describe(exc)) from exc
    conn.autocommit = True
    db = Database(conn, dbname)
    try:
        db.configure_session(lock_timeout_ms)
    except DatabaseError:
        db.close()
        raise
    return db
