from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def batched(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements, keeping order."""
    if size < 1:
        raise ValueError("batch size must be >= 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
