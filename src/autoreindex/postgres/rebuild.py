"""Rebuild strategies: one attempt at rebuilding one index.

The strategy is picked once per connection from :class:`ServerProfile`:

* PostgreSQL 12+ rebuilds in-process with ``REINDEX INDEX CONCURRENTLY``.
  A failed run leaves an invalid ``<index>_ccnew`` (or ``_ccold``) index.
* Older servers shell out to ``pg_repack --index``. A failed run leaves an
  invalid ``index_<oid>`` index next to the original.

``attempt`` never raises; every failure becomes ``RebuildOutcome.failure``.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from typing import TYPE_CHECKING, Protocol

from psycopg2 import sql

from autoreindex.models import RebuildCapability, RebuildOutcome
from autoreindex.postgres.db import DatabaseError

if TYPE_CHECKING:
    from autoreindex.models import IndexCandidate, ServerProfile
    from autoreindex.postgres.db import ConnectionParams, Database

logger = logging.getLogger(__name__)

_INVALID_INDEXES_SQL = """\
SELECT c.relname AS name
FROM pg_catalog.pg_index i
JOIN pg_catalog.pg_class c ON c.oid = i.indexrelid
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE NOT i.indisvalid
  AND n.nspname = %(schema)s
  AND c.relname LIKE %(prefix)s
ORDER BY c.relname
"""

_SIMPLE_IDENT_RE = re.compile(r"[a-z_][a-z0-9_$]*")


class RebuildStrategy(Protocol):
    """One concrete way of rebuilding an index."""

    capability: RebuildCapability

    def attempt(self, candidate: IndexCandidate) -> RebuildOutcome: ...

    def drop_leftovers(self, candidate: IndexCandidate) -> int: ...


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


def _drop_invalid(db: Database, schema: str, prefix: str, pattern: re.Pattern[str]) -> int:
    """Drop invalid indexes in *schema* whose whole name matches *pattern*."""
    rows = db.fetch_all(_INVALID_INDEXES_SQL, {"schema": schema, "prefix": _like_prefix(prefix)})
    dropped = 0
    for row in rows:
        name = row["name"]
        if not pattern.fullmatch(name):
            continue
        db.execute(
            sql.SQL("DROP INDEX CONCURRENTLY IF EXISTS {}").format(sql.Identifier(schema, name))
        )
        logger.info("Dropped leftover invalid index %s.%s", schema, name)
        dropped += 1
    return dropped


class NativeConcurrentRebuild:
    """``REINDEX INDEX CONCURRENTLY`` on the open connection."""

    capability = RebuildCapability.NATIVE_CONCURRENT

    def __init__(self, db: Database) -> None:
        self.db = db

    def attempt(self, candidate: IndexCandidate) -> RebuildOutcome:
        statement = sql.SQL("REINDEX INDEX CONCURRENTLY {}").format(
            sql.Identifier(candidate.schema, candidate.name)
        )
        try:
            self.db.execute(statement)
        except DatabaseError as exc:
            return RebuildOutcome.failure(str(exc))
        return RebuildOutcome.ok()

    def drop_leftovers(self, candidate: IndexCandidate) -> int:
        pattern = re.compile(re.escape(candidate.name) + r"_cc(new|old)[0-9]*")
        return _drop_invalid(self.db, candidate.schema, candidate.name + "_cc", pattern)


def quote_ident(name: str) -> str:
    if _SIMPLE_IDENT_RE.fullmatch(name):
        return name
    return '"' + name.replace('"', '""') + '"'


class ExternalToolRebuild:
    """Delegates the rebuild to ``pg_repack --index`` in a subprocess."""

    capability = RebuildCapability.LEGACY_EXTERNAL_TOOL

    def __init__(
        self,
        db: Database,
        params: ConnectionParams,
        *,
        command: str = "pg_repack",
        lock_timeout_ms: int = 1000,
        parallel_workers: int = 0,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.params = params
        self.command = command
        self.lock_timeout_ms = lock_timeout_ms
        self.parallel_workers = parallel_workers
        self.timeout = timeout

    def build_command(self, candidate: IndexCandidate) -> list[str]:
        qualified = f"{quote_ident(candidate.schema)}.{quote_ident(candidate.name)}"
        args = [self.command, "--dbname", self.db.name, "--index", qualified, "--no-kill-backend"]
        args += ["--wait-timeout", str(max(1, self.lock_timeout_ms // 1000))]
        if self.params.host:
            args += ["--host", self.params.host]
        if self.params.port:
            args += ["--port", str(self.params.port)]
        if self.params.username:
            args += ["--username", self.params.username]
        if self.parallel_workers > 0:
            args += ["--jobs", str(self.parallel_workers)]
        return args

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PGOPTIONS"] = f"-c statement_timeout=0 -c lock_timeout={self.lock_timeout_ms}ms"
        env["PGAPPNAME"] = "autoreindex"
        return env

    def attempt(self, candidate: IndexCandidate) -> RebuildOutcome:
        try:
            result = subprocess.run(
                self.build_command(candidate),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=self._env(),
                check=False,
            )
        except FileNotFoundError:
            return RebuildOutcome.failure(f"{self.command} not found in PATH")
        except OSError as exc:
            return RebuildOutcome.failure(f"cannot run {self.command}: {exc}")
        except subprocess.TimeoutExpired:
            return RebuildOutcome.failure(f"{self.command} timed out after {self.timeout}s")

        if result.returncode != 0:
            output = result.stderr or result.stdout
            lines = [ln.strip() for ln in output.splitlines() if ln.strip()]
            detail = lines[-1] if lines else f"exit status {result.returncode}"
            return RebuildOutcome.failure(detail)
        return RebuildOutcome.ok()

    def drop_leftovers(self, candidate: IndexCandidate) -> int:
        oid = self.db.index_oid(candidate.schema, candidate.name)
        if oid is None:
            return 0
        artifact = f"index_{oid}"
        return _drop_invalid(self.db, candidate.schema, artifact, re.compile(re.escape(artifact)))


def select_strategy(
    profile: ServerProfile,
    db: Database,
    params: ConnectionParams,
    *,
    command: str = "pg_repack",
    lock_timeout_ms: int = 1000,
) -> RebuildStrategy:
    """Pick the rebuild strategy matching the server's capability."""
    if profile.capability is RebuildCapability.NATIVE_CONCURRENT:
        return NativeConcurrentRebuild(db)
    return ExternalToolRebuild(
        db,
        params,
        command=command,
        lock_timeout_ms=lock_timeout_ms,
        parallel_workers=profile.parallel_workers,
    )
