"""Session orchestrator: walk databases and candidates, account for the benefit."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING

from autoreindex.config import GateScope
from autoreindex.engine.budget import FailureBudget
from autoreindex.engine.retry import BackoffPolicy, RetryingRebuilder
from autoreindex.engine.window import GateDecision, check_window
from autoreindex.models import (
    DatabaseRun,
    IndexReport,
    RebuildCapability,
    SessionSummary,
    format_size,
    reduction_pct,
)
from autoreindex.postgres.db import DatabaseError
from autoreindex.postgres.health import HealthStatus, check_health
from autoreindex.postgres.rebuild import select_strategy
from autoreindex.postgres.scanner import scan, strategy_for
from autoreindex.postgres.server import detect_server_profile

if TYPE_CHECKING:
    from collections.abc import Callable

    from autoreindex.config import Settings
    from autoreindex.models import IndexCandidate, ServerProfile
    from autoreindex.postgres.db import Database
    from autoreindex.postgres.rebuild import RebuildStrategy
    from autoreindex.postgres.scanner import BloatStrategy

logger = logging.getLogger(__name__)

REPACK_EXTENSION = "pg_repack"


class FatalError(Exception):
    """Unrecoverable condition: the process exits with status 1."""


class GatingAbort(Exception):
    """The run stopped cleanly: outside the maintenance window or on a standby."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.summary: SessionSummary | None = None


class _SkipDatabase(Exception):
    """Internal: stop work on the current database only."""


class SessionOrchestrator:
    """Run index maintenance over every target database, one index at a time.

    Parameters
    ----------
    settings:
        Validated configuration.
    connect:
        Opens a :class:`Database` for a database name; raises ``DatabaseError``.
    clock:
        Returns the current local time; consulted by the maintenance window gate.
    sleep:
        Blocking sleeper used between rebuild attempts.
    strategy_factory:
        Builds the rebuild strategy for a connection. Defaults to
        :func:`select_strategy` driven by the server profile.
    """

    def __init__(
        self,
        settings: Settings,
        connect: Callable[[str], Database],
        *,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        policy: BackoffPolicy | None = None,
        detector: BloatStrategy | None = None,
        strategy_factory: Callable[[ServerProfile, Database], RebuildStrategy] | None = None,
    ) -> None:
        self.settings = settings
        self.connect = connect
        self.clock = clock
        self.sleep = sleep
        self.policy = policy or BackoffPolicy()
        self.detector = detector or strategy_for(settings.strategy)
        self.strategy_factory = strategy_factory or self._default_strategy
        self.budget = FailureBudget(settings.failed_reindex_limit)

    def _default_strategy(self, profile: ServerProfile, db: Database) -> RebuildStrategy:
        return select_strategy(
            profile,
            db,
            self.settings.connection,
            command=self.settings.repack_command,
            lock_timeout_ms=self.settings.lock_timeout_ms,
        )

    # -- database discovery -------------------------------------------------

    def target_databases(self) -> list[str]:
        """Configured databases, or every connectable non-template database."""
        names = list(self.settings.databases)
        if not names:
            db = self._open(self.settings.connection.maintenance_db)
            try:
                names = db.list_databases()
            except DatabaseError as exc:
                raise FatalError(f"cannot list databases: {exc}") from exc
            finally:
                db.close()
        excluded = set(self.settings.exclude_databases)
        return [name for name in names if name not in excluded]

    def _open(self, dbname: str) -> Database:
        try:
            return self.connect(dbname)
        except DatabaseError as exc:
            raise FatalError(f"cannot connect to database {dbname}: {exc}") from exc

    # -- gating ----------------------------------------------------------------

    def _blocked(self, reason: str) -> None:
        if self.settings.gate_scope is GateScope.ABORT_RUN:
            raise GatingAbort(reason)
        raise _SkipDatabase(reason)

    def _check_window(self) -> None:
        window = self.settings.maintenance_window
        if check_window(self.clock(), window) is GateDecision.BLOCKED:
            self._blocked(f"outside maintenance window {window}")

    def _check_health(self, db: Database) -> None:
        status = check_health(db)
        if status is HealthStatus.UNREACHABLE:
            raise FatalError(f"database {db.name} does not answer")
        if status is HealthStatus.STANDBY:
            self._blocked(f"database {db.name} is a standby server")

    # -- run ---------------------------------------------------------------------

    def run(self) -> SessionSummary:
        """Process every target database; raises GatingAbort or FatalError."""
        summary = SessionSummary()
        try:
            self._check_window()
            for dbname in self.target_databases():
                run = DatabaseRun(dbname)
                try:
                    self.process_database(run)
                except GatingAbort:
                    summary.add(run)
                    log_run(run)
                    raise
                summary.add(run)
                log_run(run)
        except GatingAbort as exc:
            logger.warning("Stopping: %s", exc.reason)
            exc.summary = summary
            log_total(summary)
            raise
        except _SkipDatabase as exc:
            # Window closed before the first database in skip-database mode.
            logger.warning("Nothing to do: %s", exc)
            return summary
        log_total(summary)
        return summary

    def process_database(self, run: DatabaseRun) -> None:
        db = self._open(run.database)
        try:
            self._check_health(db)
            if not db.try_advisory_lock():
                logger.warning(
                    "Database %s is being processed by another invocation, skipping", run.database
                )
                run.skipped_reason = "locked by another invocation"
                return
            try:
                self._process_locked(db, run)
            finally:
                _unlock(db)
        except _SkipDatabase as exc:
            logger.warning("Skipping database %s: %s", run.database, exc)
            if run.skipped_reason is None:
                run.skipped_reason = str(exc)
        except DatabaseError as exc:
            raise FatalError(f"lost connection to database {run.database}: {exc}") from exc
        finally:
            db.close()

    def _process_locked(self, db: Database, run: DatabaseRun) -> None:
        self._check_window()
        profile = detect_server_profile(db, self.settings.parallel_workers)
        logger.info(
            "Database %s: PostgreSQL %s, rebuilding with %s",
            run.database,
            profile.major_version,
            profile.capability.value,
        )
        self._provision(db, profile)
        db.set_parallel_workers(profile.parallel_workers)

        try:
            run.candidates = scan(db, self.detector, self.settings.thresholds())
        except DatabaseError as exc:
            logger.error("Bloat scan of database %s failed: %s", run.database, exc)
            raise _SkipDatabase("bloat scan failed") from exc

        if not run.candidates:
            logger.info("No bloat indexes found in database %s", run.database)
            return
        logger.info("Found %d bloated index(es) in database %s", len(run.candidates), run.database)

        rebuilder = RetryingRebuilder(self.strategy_factory(profile, db), self.policy, self.sleep)
        for candidate in run.candidates:
            # Conditions may change during a long run.
            self._check_window()
            self._check_health(db)
            self._rebuild_one(db, run, rebuilder, candidate)
            if self.budget.should_stop(run):
                logger.warning(
                    "Database %s reached the failed reindex limit (%d), skipping remaining indexes",
                    run.database,
                    self.budget.limit,
                )
                run.budget_exhausted = True
                break

    def _provision(self, db: Database, profile: ServerProfile) -> None:
        needed: list[str] = []
        if self.detector.required_extension:
            needed.append(self.detector.required_extension)
        if profile.capability is RebuildCapability.LEGACY_EXTERNAL_TOOL:
            needed.append(REPACK_EXTENSION)

        for name in needed:
            try:
                if self.settings.create_extensions:
                    db.ensure_extension(name)
                    continue
                present = db.has_extension(name)
            except DatabaseError as exc:
                logger.error("Cannot create extension %s in database %s: %s", name, db.name, exc)
                raise _SkipDatabase(f"extension {name} unavailable") from exc
            if not present:
                logger.error("Extension %s is not installed in database %s", name, db.name)
                raise _SkipDatabase(f"extension {name} unavailable")

    def _rebuild_one(
        self,
        db: Database,
        run: DatabaseRun,
        rebuilder: RetryingRebuilder,
        candidate: IndexCandidate,
    ) -> None:
        try:
            size_before = db.index_size(candidate.schema, candidate.name)
        except DatabaseError as exc:
            logger.warning(
                "Index %s vanished before rebuild, skipping: %s", candidate.qualified_name, exc
            )
            return

        result = rebuilder.rebuild(candidate)
        report = IndexReport(candidate, result.state, size_before)
        if result.succeeded:
            try:
                report.size_after = db.index_size(candidate.schema, candidate.name)
            except DatabaseError as exc:
                logger.warning("Cannot measure %s after rebuild: %s", candidate.qualified_name, exc)
            else:
                logger.info(
                    "Index %s rebuilt: %s -> %s (reduction %d%%)",
                    candidate.qualified_name,
                    format_size(size_before),
                    format_size(report.size_after),
                    reduction_pct(size_before, report.size_after),
                )
        else:
            self.budget.record(run, result)
        run.record(report)

    # -- report-only ---------------------------------------------------------------

    def survey(self) -> list[DatabaseRun]:
        """Scan every target database without rebuilding anything."""
        runs: list[DatabaseRun] = []
        for dbname in self.target_databases():
            run = DatabaseRun(dbname)
            runs.append(run)
            db = self._open(dbname)
            try:
                status = check_health(db)
                if status is HealthStatus.UNREACHABLE:
                    raise FatalError(f"database {dbname} does not answer")
                if self.detector.required_extension and not db.has_extension(
                    self.detector.required_extension
                ):
                    run.skipped_reason = f"extension {self.detector.required_extension} missing"
                    logger.warning("Skipping database %s: %s", dbname, run.skipped_reason)
                    continue
                run.candidates = scan(db, self.detector, self.settings.thresholds())
            except DatabaseError as exc:
                run.skipped_reason = "bloat scan failed"
                logger.error("Bloat scan of database %s failed: %s", dbname, exc)
            finally:
                db.close()
        return runs


def _unlock(db: Database) -> None:
    try:
        db.advisory_unlock()
    except DatabaseError as exc:
        # Released with the session anyway.
        logger.debug("Advisory unlock on %s failed: %s", db.name, exc)


def log_run(run: DatabaseRun) -> None:
    if run.skipped_reason is not None and not run.reports:
        logger.info("Database %s skipped: %s", run.database, run.skipped_reason)
        return
    failed = len(run.reports) - run.rebuilt_count
    logger.info(
        "Database %s: %d index(es) rebuilt, %d failed, %s released",
        run.database,
        run.rebuilt_count,
        failed,
        format_size(run.benefit),
    )


def log_total(summary: SessionSummary) -> None:
    if summary.databases_processed > 1:
        logger.info(
            "Total released across %d database(s): %s",
            summary.databases_processed,
            format_size(summary.total_benefit),
        )
