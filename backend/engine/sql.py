from __future__ import annotations

# Trip rows in, two role-tagged point rows per trip out.
# {source} is a relation over trip records; params: lo, hi.
SPLIT_TRIPS_SQL_TEMPLATE = """
WITH trips AS (
  SELECT trip_id, pickup_latitude, pickup_longitude, dropoff_latitude, dropoff_longitude
  FROM {source}
  WHERE trip_id >= ? AND trip_id < ?
),
points AS (
  SELECT trip_id, pickup_latitude AS latitude, pickup_longitude AS longitude, 1 AS is_pickup
  FROM trips
  UNION ALL
  SELECT trip_id, dropoff_latitude AS latitude, dropoff_longitude AS longitude, 0 AS is_pickup
  FROM trips
)
SELECT trip_id, latitude, longitude, is_pickup, {bucket_expr} AS bucket
FROM points
ORDER BY bucket, trip_id, is_pickup DESC
"""

KEY_RANGE_SQL_TEMPLATE = """
SELECT min({key}) AS lo, max({key}) AS hi, count(*) AS n
FROM {source}
"""

# More than one row for a (trip_id, role) on either merge side would fan out the join.
DUPLICATE_KEYS_SQL_TEMPLATE = """
SELECT trip_id, is_pickup, count(*) AS n
FROM {points}
GROUP BY trip_id, is_pickup
HAVING count(*) > 1
ORDER BY trip_id, is_pickup
LIMIT 5
"""

# Two sequential left joins: trips -> pickup, then (pickup-joined) -> dropoff.
MERGE_TRIPS_SQL_TEMPLATE = """
WITH pickups AS (
  SELECT * FROM {points} WHERE is_pickup = 1
),
dropoffs AS (
  SELECT * FROM {points} WHERE is_pickup = 0
),
pickup_joined AS (
  SELECT t.*{pickup_cols}
  FROM {trips} AS t
  LEFT JOIN pickups AS p ON t.trip_id = p.trip_id
)
SELECT pj.*{dropoff_cols}
FROM pickup_joined AS pj
LEFT JOIN dropoffs AS d ON pj.trip_id = d.trip_id
ORDER BY pj.trip_id
"""
