"""Retrying rebuilder: bounded backoff plus leftover cleanup around a strategy."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from autoreindex.models import RebuildAttempt, RebuildResult, RebuildState
from autoreindex.postgres.db import DatabaseError

if TYPE_CHECKING:
    from collections.abc import Callable

    from autoreindex.models import IndexCandidate
    from autoreindex.postgres.rebuild import RebuildStrategy

logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (0, 10, 30, 60)


@dataclass(frozen=True)
class BackoffPolicy:
    """Ordered waits before each attempt; the length bounds the attempt count."""

    delays: tuple[float, ...] = DEFAULT_DELAYS

    def __post_init__(self) -> None:
        if not self.delays:
            raise ValueError("backoff policy needs at least one delay")
        if any(b < a for a, b in zip(self.delays, self.delays[1:])):
            raise ValueError("backoff delays must be non-decreasing")

    @property
    def max_attempts(self) -> int:
        return len(self.delays)


class RetryingRebuilder:
    """Drive one index through ``Attempting -> {Succeeded | Retrying ... | FailedAfterRetries}``.

    Parameters
    ----------
    strategy:
        The capability-selected rebuild strategy.
    policy:
        Waits before each attempt, ``[0, 10, 30, 60]`` seconds by default.
    sleep:
        Blocking sleeper; injected so tests run without real delays.
    """

    def __init__(
        self,
        strategy: RebuildStrategy,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.strategy = strategy
        self.policy = policy or BackoffPolicy()
        self.sleep = sleep

    def rebuild(self, candidate: IndexCandidate) -> RebuildResult:
        attempts: list[RebuildAttempt] = []
        total = self.policy.max_attempts

        for index, delay in enumerate(self.policy.delays):
            if delay > 0:
                logger.info("Waiting %ss before retrying %s", _fmt(delay), candidate.qualified_name)
                self.sleep(delay)
            logger.info(
                "Rebuilding index %s (attempt %d/%d)", candidate.qualified_name, index + 1, total
            )
            outcome = self.strategy.attempt(candidate)
            attempts.append(RebuildAttempt(candidate, index, delay, outcome))

            if outcome.success:
                return RebuildResult(candidate, RebuildState.SUCCEEDED, attempts)

            logger.warning(
                "Rebuild of %s failed: %s",
                candidate.qualified_name,
                outcome.diagnostic or "unknown",
            )
            self._cleanup(candidate)

        logger.error(
            "Index %s could not be rebuilt after %d attempts", candidate.qualified_name, total
        )
        return RebuildResult(candidate, RebuildState.FAILED_AFTER_RETRIES, attempts)

    def _cleanup(self, candidate: IndexCandidate) -> None:
        # Left in place on error; an ambiguous artifact is for the operator to remove.
        try:
            self.strategy.drop_leftovers(candidate)
        except DatabaseError as exc:
            logger.warning(
                "Cannot drop leftover invalid index for %s, manual cleanup needed: %s",
                candidate.qualified_name,
                exc,
            )


def _fmt(seconds: float) -> str:
    return f"{seconds:g}"
