"""Shared test fixtures for autoreindex."""

from __future__ import annotations

from datetime import datetime

import pytest
from fakes import RecordingSleeper


@pytest.fixture()
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture()
def noon() -> datetime:
    return datetime(2026, 3, 14, 12, 0)
