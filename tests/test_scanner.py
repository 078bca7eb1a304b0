"""Tests for autoreindex.postgres.scanner — bloat strategies and post-filters."""

from __future__ import annotations

import math

import pytest
from fakes import MB, FakeDatabase, FakeDetector, candidate

from autoreindex.models import SortOrder
from autoreindex.postgres.db import DatabaseError
from autoreindex.postgres.scanner import (
    EstimateStrategy,
    ExactScanStrategy,
    ScanThresholds,
    free_space_ratio,
    scan,
    strategy_for,
)


def _row(name: str, size_mb: int, bloat: float, schema: str = "public") -> dict[str, object]:
    return {"schema": schema, "name": name, "size_bytes": size_mb * MB, "bloat_ratio": bloat}


class TestScanFilters:
    def test_threshold_is_inclusive(self) -> None:
        db = FakeDatabase()
        detector = FakeDetector({"app": [candidate("a", bloat=29.9), candidate("b", bloat=30.0)]})

        result = scan(db, detector, ScanThresholds(bloat_threshold=30))

        assert [c.name for c in result] == ["b"]

    def test_size_bounds_are_inclusive(self) -> None:
        db = FakeDatabase()
        detector = FakeDetector(
            {"app": [candidate("tiny", size_mb=0), candidate("lo", size_mb=1),
                     candidate("hi", size_mb=10), candidate("huge", size_mb=11)]}
        )
        thresholds = ScanThresholds(min_size_bytes=1 * MB, max_size_bytes=10 * MB)

        result = scan(db, detector, thresholds)

        assert [c.name for c in result] == ["lo", "hi"]

    @pytest.mark.parametrize("order", [SortOrder.ASC, SortOrder.DESC])
    def test_ordering(self, order: SortOrder) -> None:
        db = FakeDatabase()
        detector = FakeDetector(
            {
                "app": [
                    candidate("m", size_mb=50),
                    candidate("s", size_mb=5),
                    candidate("l", size_mb=500),
                ]
            }
        )

        result = scan(db, detector, ScanThresholds(sort_order=order))

        sizes = [c.size_bytes for c in result]
        assert sizes == sorted(sizes, reverse=order is SortOrder.DESC)

    def test_empty(self) -> None:
        assert scan(FakeDatabase(), FakeDetector(), ScanThresholds()) == []


class TestEstimateStrategy:
    def test_maps_rows(self) -> None:
        db = FakeDatabase()
        db.fetch_all_results = [
            [_row("orders_pkey", 180, 85.5, schema="sales"), _row("b_idx", 2, 31.0)]
        ]

        result = EstimateStrategy().measure(db, ScanThresholds())

        assert result[0].qualified_name == "sales.orders_pkey"
        assert result[0].size_bytes == 180 * MB
        assert result[0].bloat_ratio == 85.5
        assert len(result) == 2

    def test_passes_thresholds_as_parameters(self) -> None:
        db = FakeDatabase()
        thresholds = ScanThresholds(
            bloat_threshold=40, min_size_bytes=5 * MB, max_size_bytes=9 * MB
        )

        EstimateStrategy().measure(db, thresholds)

        _query, params = db.queries[0]
        assert params == {"min_size": 5 * MB, "max_size": 9 * MB, "threshold": 40}

    def test_through_scan_keeps_filters(self) -> None:
        db = FakeDatabase()
        db.fetch_all_results = [[_row("a", 3, 10.0), _row("b", 3, 60.0)]]

        result = scan(db, EstimateStrategy(), ScanThresholds())

        assert [c.name for c in result] == ["b"]


class TestExactScanStrategy:
    def _listing(self) -> list[dict[str, object]]:
        return [
            {"schema": "public", "name": "a_idx", "oid": 1, "size_bytes": 2 * MB, "fillfactor": 90},
            {"schema": "public", "name": "b_idx", "oid": 2, "size_bytes": 8 * MB, "fillfactor": 90},
        ]

    def test_measures_each_index(self) -> None:
        db = FakeDatabase(extensions={"pgstattuple": "ext"})
        db.fetch_all_results = [self._listing()]
        db.fetch_value_results = [45.0, 88.2]

        result = ExactScanStrategy().measure(db, ScanThresholds())

        assert [c.bloat_ratio for c in result] == [50.0, 2.0]
        # pgstatindex is called once per listed index, with its oid.
        assert [params for _q, params in db.queries[1:]] == [(1,), (2,)]

    def test_skips_index_that_cannot_be_inspected(self) -> None:
        db = FakeDatabase(extensions={"pgstattuple": "public"})
        db.fetch_all_results = [self._listing()]
        db.fetch_value_results = [DatabaseError("relation does not exist"), 30.0]

        result = ExactScanStrategy().measure(db, ScanThresholds())

        assert [c.name for c in result] == ["b_idx"]

    def test_requires_extension(self) -> None:
        with pytest.raises(DatabaseError, match="pgstattuple"):
            ExactScanStrategy().measure(FakeDatabase(), ScanThresholds())


class TestFreeSpaceRatio:
    def test_relative_to_fillfactor(self) -> None:
        assert free_space_ratio(45.0, 90) == 50.0

    def test_rounds_to_one_decimal(self) -> None:
        assert free_space_ratio(60.0, 70) == 14.3

    def test_empty_index(self) -> None:
        assert free_space_ratio(math.nan, 90) == 0.0
        assert free_space_ratio(None, 90) == 0.0


class TestStrategyFor:
    def test_known(self) -> None:
        assert isinstance(strategy_for("estimate"), EstimateStrategy)
        assert isinstance(strategy_for("exact-scan"), ExactScanStrategy)

    def test_unknown(self) -> None:
        with pytest.raises(ValueError, match="unknown"):
            strategy_for("guess")
