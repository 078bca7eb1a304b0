"""In-memory stand-ins for the server, strategies and sleeper."""

from __future__ import annotations

from typing import Any

from autoreindex.models import IndexCandidate, RebuildCapability, RebuildOutcome
from autoreindex.postgres.db import DatabaseError

MB = 1024 * 1024


class FakeDatabase:
    """Implements the :class:`autoreindex.postgres.db.Database` surface in memory."""

    def __init__(
        self,
        name: str = "app",
        *,
        version_num: int = 160002,
        in_recovery: bool = False,
        reachable: bool = True,
        sizes: dict[str, list[int]] | None = None,
        extensions: dict[str, str] | None = None,
        locked_elsewhere: bool = False,
        databases: list[str] | None = None,
    ) -> None:
        self.name = name
        self.version_num = version_num
        self.in_recovery = in_recovery
        self.reachable = reachable
        self.sizes = sizes or {}
        self.extensions = dict(extensions or {})
        self.locked_elsewhere = locked_elsewhere
        self.databases = databases or []

        self.fetch_all_results: list[list[dict[str, Any]]] = []
        self.fetch_value_results: list[Any] = []
        self.execute_errors: list[str] = []
        self.extension_error: str | None = None

        self.executed: list[Any] = []
        self.queries: list[tuple[Any, Any]] = []
        self.created_extensions: list[str] = []
        self.parallel_workers: int | None = None
        self.ping_count = 0
        self.unlocked = False
        self.closed = False

    # generic access
    def fetch_all(self, query: Any, params: Any = None) -> list[dict[str, Any]]:
        self.queries.append((query, params))
        return self.fetch_all_results.pop(0) if self.fetch_all_results else []

    def fetch_value(self, query: Any, params: Any = None) -> Any:
        self.queries.append((query, params))
        value = self.fetch_value_results.pop(0) if self.fetch_value_results else None
        if isinstance(value, Exception):
            raise value
        return value

    def execute(self, query: Any, params: Any = None) -> None:
        self.executed.append(query)
        if self.execute_errors:
            raise DatabaseError(self.execute_errors.pop(0))

    def close(self) -> None:
        self.closed = True

    # session
    def set_parallel_workers(self, workers: int) -> None:
        self.parallel_workers = workers

    # catalog helpers
    def ping(self) -> None:
        self.ping_count += 1
        if not self.reachable:
            raise DatabaseError("server closed the connection unexpectedly")

    def is_in_recovery(self) -> bool:
        return self.in_recovery

    def server_version_num(self) -> int:
        return self.version_num

    def index_size(self, schema: str, name: str) -> int:
        key = f"{schema}.{name}"
        if key not in self.sizes:
            raise DatabaseError(f"index {key} does not exist")
        seq = self.sizes[key]
        return seq.pop(0) if len(seq) > 1 else seq[0]

    def index_oid(self, schema: str, name: str) -> int | None:
        return 16384 if f"{schema}.{name}" in self.sizes else None

    def list_databases(self) -> list[str]:
        return list(self.databases)

    def has_extension(self, name: str) -> bool:
        return name in self.extensions

    def extension_schema(self, name: str) -> str | None:
        return self.extensions.get(name)

    def ensure_extension(self, name: str) -> None:
        if self.extension_error:
            raise DatabaseError(self.extension_error)
        if name not in self.extensions:
            self.extensions[name] = "public"
            self.created_extensions.append(name)

    def try_advisory_lock(self) -> bool:
        return not self.locked_elsewhere

    def advisory_unlock(self) -> None:
        self.unlocked = True


class FakeStrategy:
    """Rebuild strategy replaying scripted outcomes."""

    capability = RebuildCapability.NATIVE_CONCURRENT

    def __init__(
        self, outcomes: list[bool] | None = None, *, cleanup_error: str | None = None
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.cleanup_error = cleanup_error
        self.attempted: list[str] = []
        self.cleaned: list[str] = []

    def attempt(self, candidate: IndexCandidate) -> RebuildOutcome:
        self.attempted.append(candidate.qualified_name)
        ok = self.outcomes.pop(0) if self.outcomes else True
        if ok:
            return RebuildOutcome.ok()
        return RebuildOutcome.failure("canceling statement due to lock timeout")

    def drop_leftovers(self, candidate: IndexCandidate) -> int:
        self.cleaned.append(candidate.qualified_name)
        if self.cleanup_error:
            raise DatabaseError(self.cleanup_error)
        return 1


class FakeDetector:
    """Bloat strategy returning fixed candidates per database."""

    name = "fake"
    required_extension: str | None = None

    def __init__(self, candidates: dict[str, list[IndexCandidate]] | None = None) -> None:
        self.candidates = candidates or {}
        self.scanned: list[str] = []

    def measure(self, db: Any, thresholds: Any) -> list[IndexCandidate]:
        self.scanned.append(db.name)
        return list(self.candidates.get(db.name, []))


class RecordingSleeper:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def candidate(
    name: str, size_mb: int = 100, bloat: float = 50.0, schema: str = "public"
) -> IndexCandidate:
    return IndexCandidate(schema=schema, name=name, size_bytes=size_mb * MB, bloat_ratio=bloat)
