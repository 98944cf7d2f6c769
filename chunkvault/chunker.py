"""Fixed-size part planning shared by client and server."""
from typing import List, NamedTuple

DEFAULT_CHUNK_SIZE = 2 * 1024 * 1024  # 2MiB


class ByteRange(NamedTuple):
    part_number: int
    start: int
    end: int  # exclusive

    @property
    def length(self) -> int:
        return self.end - self.start


def _check(size: int, chunk_size: int):
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")


def total_parts(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    _check(size, chunk_size)
    return (size + chunk_size - 1) // chunk_size


def split(size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[ByteRange]:
    """
    Split ``[0, size)`` into 1-indexed contiguous ranges of ``chunk_size``.

    The final range may be shorter. Calling it again with the same inputs
    yields the same plan, so resumes re-derive it instead of storing it.
    """
    _check(size, chunk_size)
    return [
        ByteRange(index + 1, start, min(start + chunk_size, size))
        for index, start in enumerate(range(0, size, chunk_size))
    ]


def part_range(size: int, chunk_size: int, part_number: int) -> ByteRange:
    """Range of a single part; raises ValueError outside ``1..total_parts``."""
    count = total_parts(size, chunk_size)
    if part_number < 1 or part_number > count:
        raise ValueError(f"part number must be between 1 and {count}, got {part_number}")
    start = (part_number - 1) * chunk_size
    return ByteRange(part_number, start, min(start + chunk_size, size))
