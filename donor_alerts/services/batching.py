# donor_alerts/services/batching.py
from typing import Iterable, Iterator, List, TypeVar

T = TypeVar("T")


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """
    Splits `items` into consecutive groups of at most `size`.
    chunked([1, 2, 3, 4, 5], 2) -> [1, 2], [3, 4], [5]
    """
    if size < 1:
        raise ValueError("size must be >= 1")
    group: List[T] = []
    for item in items:
        group.append(item)
        if len(group) == size:
            yield group
            group = []
    if group:
        yield group
