from __future__ import annotations

import logging
from typing import Sequence

from engine.context import ExecutionContext
from engine.errors import MergeIntegrityError
from engine.sql import DUPLICATE_KEYS_SQL_TEMPLATE, MERGE_TRIPS_SQL_TEMPLATE
from engine.tables import StageArtifact, quote_ident, table_columns

logger = logging.getLogger(__name__)

ROLE_PREFIXES = ("pickup_", "dropoff_")

# Point-level columns that never reach the merged trip record.
WORKING_COLUMNS = frozenset(
    {"trip_id", "latitude", "longitude", "is_pickup", "role", "geometry", "bucket"}
)


def merge_trip_results(
    ctx: ExecutionContext,
    *,
    trips_sql: str,
    points_sql: str,
    drop_columns: Sequence[str] = (),
    table: str = "merged_trips",
) -> StageArtifact:
    """
    Reassemble enriched pickup/dropoff points into one row per trip.

    Left joins keep every trip: a point that matched nothing contributes nulls.
    `drop_columns` names extra working columns (e.g. raw class codes) to leave out.
    """
    conn = ctx.conn
    points = f"({points_sql})"
    trips = f"({trips_sql})"

    dupes = conn.execute(DUPLICATE_KEYS_SQL_TEMPLATE.format(points=points)).fetchall()
    if dupes:
        sample = ", ".join(f"trip {t} ({'pickup' if p == 1 else 'dropoff'}) x{n}" for t, p, n in dupes)
        raise MergeIntegrityError(
            f"Enriched points hold more than one row per trip and role: {sample}"
        )

    drop = WORKING_COLUMNS | set(drop_columns)
    carried = [c for c in table_columns(conn, points_sql) if c not in drop]

    trip_cols = set(table_columns(conn, trips_sql))
    for prefix in ROLE_PREFIXES:
        clash = sorted(trip_cols & {f"{prefix}{c}" for c in carried})
        if clash:
            raise ValueError(f"Merged columns would collide with trip columns: {clash}")

    pickup_cols = "".join(
        f", p.{quote_ident(c)} AS {quote_ident('pickup_' + c)}" for c in carried
    )
    dropoff_cols = "".join(
        f", d.{quote_ident(c)} AS {quote_ident('dropoff_' + c)}" for c in carried
    )
    sql = MERGE_TRIPS_SQL_TEMPLATE.format(
        points=points, trips=trips, pickup_cols=pickup_cols, dropoff_cols=dropoff_cols
    )
    conn.execute(f"CREATE OR REPLACE TEMP TABLE {quote_ident(table)} AS {sql}")

    columns = tuple(table_columns(conn, f"SELECT * FROM {quote_ident(table)}"))
    rows = int(conn.execute(f"SELECT count(*) FROM {quote_ident(table)}").fetchone()[0])
    logger.info("merged %d trips with %d enrichment column(s) per role", rows, len(carried))
    return StageArtifact(stage="merge", table=table, columns=columns, rows=rows)
