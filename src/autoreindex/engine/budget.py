"""Per-database failure budget."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autoreindex.models import DatabaseRun, RebuildResult


@dataclass(frozen=True)
class FailureBudget:
    """Stop a database after ``limit`` indexes failed all retries; 0 is unlimited."""

    limit: int = 0

    def record(self, run: DatabaseRun, result: RebuildResult) -> None:
        if not result.succeeded:
            run.failures += 1

    def should_stop(self, run: DatabaseRun) -> bool:
        return self.limit != 0 and run.failures >= self.limit
