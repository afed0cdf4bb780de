"""
Bounded fan-out helper.

Used wherever an operation is applied per backup file or per provider so the
number of open file descriptors, rclone processes or S3 connections stays
bounded.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence, TypeVar

T = TypeVar('T')
R = TypeVar('R')


def map_with_concurrency(items: Sequence[T], limit: int, fn: Callable[[T], R]) -> List[R]:
    """
    Map items through fn with at most `limit` calls in flight.

    Results are returned in input order regardless of completion order. The
    first exception raised by fn propagates to the caller; callers that need
    partial-failure tolerance must catch inside fn.

    Args:
        items: Ordered sequence of inputs
        limit: Maximum number of concurrent calls (must be >= 1)
        fn: Transform applied to each item

    Returns:
        List of results, same length and order as items

    Raises:
        ValueError: If limit is less than 1
    """
    if limit < 1:
        raise ValueError(f"Concurrency limit must be a positive integer, got {limit}")

    items = list(items)
    if not items:
        return []

    workers = min(limit, len(items))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='statevault-worker') as executor:
        return list(executor.map(fn, items))
