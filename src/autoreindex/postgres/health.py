"""Connection health: liveness probe and standby detection."""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING

from autoreindex.postgres.db import DatabaseError

if TYPE_CHECKING:
    from autoreindex.postgres.db import Database

logger = logging.getLogger(__name__)


class HealthStatus(enum.Enum):
    """Whether a database can take index maintenance right now."""

    READY = "ready"
    STANDBY = "standby"
    UNREACHABLE = "unreachable"


def check_health(db: Database) -> HealthStatus:
    """Probe *db*; a read replica cannot be reindexed."""
    try:
        db.ping()
        in_recovery = db.is_in_recovery()
    except DatabaseError as exc:
        logger.debug("Health probe of %s failed: %s", db.name, exc)
        return HealthStatus.UNREACHABLE
    if in_recovery:
        return HealthStatus.STANDBY
    return HealthStatus.READY
