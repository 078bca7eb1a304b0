"""Bloat detection: rank B-tree indexes worth rebuilding.

Two interchangeable strategies produce :class:`IndexCandidate` rows:

* :class:`EstimateStrategy` approximates the expected page count of each
  index from catalog statistics (tuple width, null fraction, fill factor)
  and compares it with the actual page count. No index page is read.
* :class:`ExactScanStrategy` runs ``pgstattuple.pgstatindex`` on every index
  in the size range and derives free space from the average leaf density.

:func:`scan` applies the same post-filters and ordering to either result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from psycopg2 import sql

from autoreindex.models import IndexCandidate, SortOrder
from autoreindex.postgres.db import DatabaseError

if TYPE_CHECKING:
    from autoreindex.postgres.db import Database

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Shared restriction: valid, persistent B-tree indexes outside system schemas.
_INDEX_FILTER_SQL = """\
    ci.relam = (SELECT oid FROM pg_catalog.pg_am WHERE amname = 'btree')
    AND ci.relpersistence = 'p'
    AND i.indisvalid
    AND i.indisready
    AND n.nspname NOT IN ('pg_catalog', 'information_schema')
    AND n.nspname !~ '^pg_toast'
    AND n.nspname !~ '^pg_temp'
"""

# Adapted from the pgsql-bloat-estimation B-tree query.
_ESTIMATE_SQL = """\
WITH idx_data AS (
    SELECT
        n.nspname,
        ci.relname AS idxname,
        ci.reltuples,
        ci.relpages,
        i.indrelid AS tbloid,
        i.indexrelid AS idxoid,
        coalesce(
            substring(array_to_string(ci.reloptions, ' ') FROM 'fillfactor=([0-9]+)')::smallint,
            90
        ) AS fillfactor,
        i.indnatts,
        pg_catalog.string_to_array(
            pg_catalog.textin(pg_catalog.int2vectorout(i.indkey)), ' '
        )::int[] AS indkey
    FROM pg_catalog.pg_index i
    JOIN pg_catalog.pg_class ci ON ci.oid = i.indexrelid
    JOIN pg_catalog.pg_namespace n ON n.oid = ci.relnamespace
    WHERE ci.relpages > 0
      AND {index_filter}
),
ic AS (
    SELECT *, pg_catalog.generate_series(1, indnatts) AS attpos FROM idx_data
),
cols AS (
    SELECT
        ic.nspname, ic.idxname, ic.reltuples, ic.relpages, ic.idxoid, ic.fillfactor,
        coalesce(a1.attname, a2.attname) AS attname,
        coalesce(a1.atttypid, a2.atttypid) AS atttypid,
        CASE WHEN a1.attnum IS NULL THEN ic.idxname ELSE ct.relname END AS attrelname
    FROM ic
    JOIN pg_catalog.pg_class ct ON ct.oid = ic.tbloid
    LEFT JOIN pg_catalog.pg_attribute a1
        ON ic.indkey[ic.attpos] <> 0
        AND a1.attrelid = ic.tbloid
        AND a1.attnum = ic.indkey[ic.attpos]
    LEFT JOIN pg_catalog.pg_attribute a2
        ON ic.indkey[ic.attpos] = 0 AND a2.attrelid = ic.idxoid AND a2.attnum = ic.attpos
),
row_stats AS (
    SELECT
        cols.nspname, cols.idxname, cols.reltuples, cols.relpages, cols.idxoid, cols.fillfactor,
        current_setting('block_size')::numeric AS bs,
        CASE WHEN version() ~ 'mingw32|64-bit|x86_64|ppc64|ia64|amd64' THEN 8 ELSE 4 END
            AS maxalign,
        24 AS pagehdr,
        16 AS pageopqdata,
        CASE WHEN max(coalesce(s.null_frac, 0)) = 0 THEN 8 ELSE 8 + ((32 + 8 - 1) / 8) END
            AS index_tuple_hdr_bm,
        sum((1 - coalesce(s.null_frac, 0)) * coalesce(s.avg_width, 1024)) AS nulldatawidth
    FROM cols
    LEFT JOIN pg_catalog.pg_stats s
        ON s.schemaname = cols.nspname
        AND s.tablename = cols.attrelname
        AND s.attname = cols.attname
    GROUP BY 1, 2, 3, 4, 5, 6
),
width_stats AS (
    SELECT *,
        (
            index_tuple_hdr_bm + maxalign
            - CASE WHEN mod(index_tuple_hdr_bm, maxalign) = 0 THEN maxalign
                   ELSE mod(index_tuple_hdr_bm, maxalign) END
            + nulldatawidth + maxalign
            - CASE WHEN nulldatawidth = 0 THEN 0
                   WHEN mod(nulldatawidth::integer, maxalign) = 0 THEN maxalign
                   ELSE mod(nulldatawidth::integer, maxalign) END
        )::numeric AS nulldatahdrwidth
    FROM row_stats
),
estimates AS (
    SELECT *,
        coalesce(
            1 + ceil(
                reltuples / floor(
                    (bs - pageopqdata - pagehdr) * fillfactor
                    / (100 * (4 + nulldatahdrwidth)::float)
                )
            ),
            0
        ) AS est_pages_ff
    FROM width_stats
)
SELECT
    nspname AS schema,
    idxname AS name,
    pg_catalog.pg_relation_size(idxoid) AS size_bytes,
    round((100 * (relpages - est_pages_ff)::float / relpages)::numeric, 1) AS bloat_ratio
FROM estimates
WHERE pg_catalog.pg_relation_size(idxoid) BETWEEN %(min_size)s AND %(max_size)s
  AND round((100 * (relpages - est_pages_ff)::float / relpages)::numeric, 1) >= %(threshold)s
ORDER BY size_bytes {direction}
"""

_EXACT_LIST_SQL = """\
SELECT
    n.nspname AS schema,
    ci.relname AS name,
    ci.oid AS oid,
    pg_catalog.pg_relation_size(ci.oid) AS size_bytes,
    coalesce(
        substring(array_to_string(ci.reloptions, ' ') FROM 'fillfactor=([0-9]+)')::smallint,
        90
    ) AS fillfactor
FROM pg_catalog.pg_index i
JOIN pg_catalog.pg_class ci ON ci.oid = i.indexrelid
JOIN pg_catalog.pg_namespace n ON n.oid = ci.relnamespace
WHERE {index_filter}
  AND pg_catalog.pg_relation_size(ci.oid) BETWEEN %(min_size)s AND %(max_size)s
ORDER BY size_bytes {direction}
"""

_PGSTATINDEX_SQL = "SELECT avg_leaf_density FROM {schema}.pgstatindex(%s::regclass)"


@dataclass(frozen=True)
class ScanThresholds:
    """Filters every strategy has to honour."""

    bloat_threshold: float = 30.0
    min_size_bytes: int = 1 * MB
    max_size_bytes: int = 1_000_000 * MB
    sort_order: SortOrder = SortOrder.ASC


class BloatStrategy(Protocol):
    """Anything that turns thresholds into scored index rows."""

    name: str
    required_extension: str | None

    def measure(self, db: Database, thresholds: ScanThresholds) -> list[IndexCandidate]: ...


def _direction(order: SortOrder) -> sql.SQL:
    return sql.SQL("DESC" if order is SortOrder.DESC else "ASC")


def _params(thresholds: ScanThresholds) -> dict[str, Any]:
    return {
        "min_size": thresholds.min_size_bytes,
        "max_size": thresholds.max_size_bytes,
        "threshold": thresholds.bloat_threshold,
    }


class EstimateStrategy:
    """Statistics-based estimate; cheap, no index I/O."""

    name = "estimate"
    required_extension: str | None = None

    def measure(self, db: Database, thresholds: ScanThresholds) -> list[IndexCandidate]:
        query = sql.SQL(_ESTIMATE_SQL).format(
            index_filter=sql.SQL(_INDEX_FILTER_SQL),
            direction=_direction(thresholds.sort_order),
        )
        rows = db.fetch_all(query, _params(thresholds))
        return [
            IndexCandidate(
                schema=row["schema"],
                name=row["name"],
                size_bytes=int(row["size_bytes"]),
                bloat_ratio=float(row["bloat_ratio"]),
            )
            for row in rows
        ]


class ExactScanStrategy:
    """Measures free space with ``pgstatindex``; accurate but reads every page."""

    name = "exact-scan"
    required_extension: str | None = "pgstattuple"

    def __init__(self, extension_schema: str | None = None) -> None:
        self.extension_schema = extension_schema

    def measure(self, db: Database, thresholds: ScanThresholds) -> list[IndexCandidate]:
        schema = self.extension_schema or db.extension_schema("pgstattuple")
        if schema is None:
            raise DatabaseError(f"extension pgstattuple is not installed in {db.name}")

        query = sql.SQL(_EXACT_LIST_SQL).format(
            index_filter=sql.SQL(_INDEX_FILTER_SQL),
            direction=_direction(thresholds.sort_order),
        )
        stat_query = sql.SQL(_PGSTATINDEX_SQL).format(schema=sql.Identifier(schema))

        candidates: list[IndexCandidate] = []
        for row in db.fetch_all(query, _params(thresholds)):
            try:
                density = db.fetch_value(stat_query, (row["oid"],))
            except DatabaseError as exc:
                # Dropped or locked since the listing; not worth failing the scan.
                logger.warning("Cannot inspect index %s.%s: %s", row["schema"], row["name"], exc)
                continue
            candidates.append(
                IndexCandidate(
                    schema=row["schema"],
                    name=row["name"],
                    size_bytes=int(row["size_bytes"]),
                    bloat_ratio=free_space_ratio(density, row["fillfactor"]),
                )
            )
        return candidates


def free_space_ratio(avg_leaf_density: float | None, fillfactor: float) -> float:
    """Free space in percent relative to the density a fresh index would have."""
    if avg_leaf_density is None or math.isnan(float(avg_leaf_density)) or not fillfactor:
        return 0.0
    return round(100 * (1 - float(avg_leaf_density) / float(fillfactor)), 1)


def strategy_for(name: str) -> BloatStrategy:
    if name == EstimateStrategy.name:
        return EstimateStrategy()
    if name == ExactScanStrategy.name:
        return ExactScanStrategy()
    raise ValueError(f"unknown bloat detection strategy: {name!r}")


def _passes(candidate: IndexCandidate, thresholds: ScanThresholds) -> bool:
    return (
        candidate.bloat_ratio >= thresholds.bloat_threshold
        and thresholds.min_size_bytes <= candidate.size_bytes <= thresholds.max_size_bytes
    )


def scan(db: Database, strategy: BloatStrategy, thresholds: ScanThresholds) -> list[IndexCandidate]:
    """Return rebuild candidates of *db* ordered by size per ``thresholds.sort_order``."""
    measured = strategy.measure(db, thresholds)
    candidates = [c for c in measured if _passes(c, thresholds)]
    candidates.sort(
        key=lambda c: c.size_bytes,
        reverse=thresholds.sort_order is SortOrder.DESC,
    )
    logger.debug(
        "Strategy %s found %d of %d indexes above %.1f%% bloat in %s",
        strategy.name,
        len(candidates),
        len(measured),
        thresholds.bloat_threshold,
        db.name,
    )
    return candidates
