"""PostgreSQL collaborators: connection layer, health, server profile, scanning, rebuilding.

``autoreindex.postgres.rebuild`` is not re-exported here because it pulls in the
subprocess-based external tool strategy; import it directly::

    from autoreindex.postgres.rebuild import select_strategy
"""

from autoreindex.postgres.db import (
    ConnectionParams,
    Database,
    DatabaseError,
    open_db,
)
from autoreindex.postgres.health import HealthStatus, check_health
from autoreindex.postgres.server import detect_server_profile

__all__ = [
    "ConnectionParams",
    "Database",
    "DatabaseError",
    "HealthStatus",
    "check_health",
    "detect_server_profile",
    "open_db",
]
