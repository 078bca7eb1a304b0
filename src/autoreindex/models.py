"""Data model shared by the scanner, the rebuilders and the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class RebuildCapability(enum.Enum):
    """How a server can rebuild an index without a long exclusive lock."""

    LEGACY_EXTERNAL_TOOL = "legacy-external-tool"
    NATIVE_CONCURRENT = "native-concurrent"


class SortOrder(enum.Enum):
    """Candidate ordering by index size."""

    ASC = "asc"
    DESC = "desc"


class RebuildState(enum.Enum):
    """Terminal state of one index after the retry loop."""

    SUCCEEDED = "succeeded"
    FAILED_AFTER_RETRIES = "failed_after_retries"


@dataclass(frozen=True)
class IndexCandidate:
    """Snapshot of a bloated index as reported by the scanner.

    The size is stale as soon as it is produced; the orchestrator measures
    the index again right before rebuilding it.
    """

    schema: str
    name: str
    size_bytes: int
    bloat_ratio: float

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class ServerProfile:
    """Server facts resolved once per connection."""

    version_num: int
    capability: RebuildCapability
    parallel_workers: int = 0

    @property
    def major_version(self) -> int:
        # 9.6 -> 906, 12.4 -> 12
        if self.version_num >= 100000:
            return self.version_num // 10000
        return self.version_num // 100


@dataclass(frozen=True)
class RebuildOutcome:
    """Result of a single rebuild attempt."""

    success: bool
    diagnostic: str = ""

    @classmethod
    def ok(cls) -> RebuildOutcome:
        return cls(success=True)

    @classmethod
    def failure(cls, diagnostic: str) -> RebuildOutcome:
        return cls(success=False, diagnostic=diagnostic)


@dataclass(frozen=True)
class RebuildAttempt:
    """One attempt of the retry loop."""

    candidate: IndexCandidate
    index: int
    delay_seconds: float
    outcome: RebuildOutcome


@dataclass
class RebuildResult:
    """All attempts made for one candidate plus the terminal state."""

    candidate: IndexCandidate
    state: RebuildState
    attempts: list[RebuildAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RebuildState.SUCCEEDED

    @property
    def waited_seconds(self) -> float:
        return sum(a.delay_seconds for a in self.attempts)


@dataclass
class IndexReport:
    """Before/after accounting for one candidate of a DatabaseRun."""

    candidate: IndexCandidate
    state: RebuildState
    size_before: int
    size_after: int | None = None

    @property
    def benefit(self) -> int:
        """Bytes released; negative when the index grew back, 0 when not rebuilt."""
        if self.state is not RebuildState.SUCCEEDED or self.size_after is None:
            return 0
        return self.size_before - self.size_after


@dataclass
class DatabaseRun:
    """Processing state of one database."""

    database: str
    candidates: list[IndexCandidate] = field(default_factory=list)
    failures: int = 0
    benefit: int = 0
    reports: list[IndexReport] = field(default_factory=list)
    skipped_reason: str | None = None
    budget_exhausted: bool = False

    def record(self, report: IndexReport) -> None:
        self.reports.append(report)
        self.benefit += report.benefit

    @property
    def rebuilt_count(self) -> int:
        return sum(1 for r in self.reports if r.state is RebuildState.SUCCEEDED)


@dataclass
class SessionSummary:
    """Accumulated results of a whole invocation."""

    runs: list[DatabaseRun] = field(default_factory=list)

    def add(self, run: DatabaseRun) -> None:
        self.runs.append(run)

    @property
    def databases_processed(self) -> int:
        return sum(1 for r in self.runs if r.skipped_reason is None)

    @property
    def total_benefit(self) -> int:
        return sum(r.benefit for r in self.runs)


_SIZE_UNITS = ("bytes", "kB", "MB", "GB", "TB", "PB")


def format_size(num_bytes: int) -> str:
    """Render a byte count the way ``pg_size_pretty`` does (integer units)."""
    sign = "-" if num_bytes < 0 else ""
    value = abs(num_bytes)
    for unit in _SIZE_UNITS[:-1]:
        # pg_size_pretty switches to the next unit once the value reaches 10240.
        if value < 10 * 1024:
            return f"{sign}{value} {unit}"
        value = (value + 512) // 1024
    return f"{sign}{value} {_SIZE_UNITS[-1]}"


def reduction_pct(size_before: int, size_after: int) -> int:
    """Size reduction in percent, truncated toward zero."""
    if size_before <= 0:
        return 0
    return int((size_before - size_after) * 100 / size_before)
