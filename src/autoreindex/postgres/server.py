"""Server profile detection."""

from __future__ import annotations

from typing import TYPE_CHECKING

from autoreindex.models import RebuildCapability, ServerProfile

if TYPE_CHECKING:
    from autoreindex.postgres.db import Database

# REINDEX INDEX CONCURRENTLY is available from PostgreSQL 12 on.
NATIVE_CONCURRENT_MIN_VERSION = 120000


def capability_for(version_num: int) -> RebuildCapability:
    if version_num >= NATIVE_CONCURRENT_MIN_VERSION:
        return RebuildCapability.NATIVE_CONCURRENT
    return RebuildCapability.LEGACY_EXTERNAL_TOOL


def detect_server_profile(db: Database, parallel_workers: int = 0) -> ServerProfile:
    """Resolve the profile once per connection; it never changes mid-run."""
    version_num = db.server_version_num()
    return ServerProfile(
        version_num=version_num,
        capability=capability_for(version_num),
        parallel_workers=parallel_workers,
    )
