"""Decision core: maintenance window, retry/backoff, failure budget, orchestration.

``autoreindex.engine.orchestrator`` is not re-exported here because it depends on
``autoreindex.config``, which itself imports the window gate::

    from autoreindex.engine.orchestrator import SessionOrchestrator
"""

from autoreindex.engine.budget import FailureBudget
from autoreindex.engine.retry import DEFAULT_DELAYS, BackoffPolicy, RetryingRebuilder
from autoreindex.engine.window import GateDecision, MaintenanceWindow, check_window, parse_hhmm

__all__ = [
    "DEFAULT_DELAYS",
    "BackoffPolicy",
    "FailureBudget",
    "GateDecision",
    "MaintenanceWindow",
    "RetryingRebuilder",
    "check_window",
    "parse_hhmm",
]
