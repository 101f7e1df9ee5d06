"""
Partitioning by trip id.

Python and SQL use the same rule (non-negative trip_id modulo n), so every row of a
trip lands in the same bucket on each dataset joined on trip_id.
Partitioning only affects data movement; results never depend on it.
"""

from __future__ import annotations

import math
from typing import Callable, Iterable, TypeVar

from engine.tables import quote_ident

T = TypeVar("T")


def partition_of(trip_id: int, partitions: int) -> int:
    _check_partitions(partitions)
    # Python's % is already non-negative for a positive modulus.
    return int(trip_id) % int(partitions)


def range_partition_of(trip_id: int, *, lo: int, hi: int, partitions: int) -> int:
    """
    Contiguous slicing of [lo, hi) into `partitions` ranges; ids outside are clamped.
    """
    _check_partitions(partitions)
    if hi <= lo:
        raise ValueError(f"Empty key range [{lo}, {hi})")
    width = max(1, math.ceil((hi - lo) / partitions))
    bucket = (int(trip_id) - lo) // width
    return max(0, min(partitions - 1, bucket))


def partition_records(
    records: Iterable[T],
    partitions: int,
    *,
    key: Callable[[T], int] = lambda r: r.trip_id,  # type: ignore[attr-defined]
) -> dict[int, list[T]]:
    """
    Bucket records by trip id. Only non-empty buckets are returned, in bucket order.
    """
    _check_partitions(partitions)
    out: dict[int, list[T]] = {}
    for r in records:
        out.setdefault(partition_of(key(r), partitions), []).append(r)
    return dict(sorted(out.items()))


def partition_expr(column: str, partitions: int) -> str:
    """
    SQL form of `partition_of` for DuckDB queries.
    """
    _check_partitions(partitions)
    n = int(partitions)
    col = quote_ident(column)
    return f"((({col} % {n}) + {n}) % {n})"


def _check_partitions(partitions: int) -> None:
    if int(partitions) < 1:
        raise ValueError(f"Partition count must be >= 1, got {partitions}")
