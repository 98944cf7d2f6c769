import pytest

from chunkvault import chunker
from chunkvault.chunker import ByteRange, DEFAULT_CHUNK_SIZE

MiB = 1024 * 1024


def test_default_chunk_size_is_two_mib():
    assert DEFAULT_CHUNK_SIZE == 2 * MiB


def test_five_mib_file_splits_into_three_parts():
    plan = chunker.split(5 * MiB, 2 * MiB)

    assert plan == [
        ByteRange(1, 0, 2 * MiB),
        ByteRange(2, 2 * MiB, 4 * MiB),
        ByteRange(3, 4 * MiB, 5 * MiB),
    ]
    assert chunker.total_parts(5 * MiB, 2 * MiB) == 3
    assert plan[-1].length == MiB


@pytest.mark.parametrize("size,chunk_size", [
    (1, 1), (1, 7), (7, 7), (8, 7), (100, 3), (1000, 1000), (1001, 1000), (4097, 512),
])
def test_plan_covers_every_byte_exactly_once(size, chunk_size):
    plan = chunker.split(size, chunk_size)

    assert [r.part_number for r in plan] == list(range(1, len(plan) + 1))
    assert plan[0].start == 0
    assert plan[-1].end == size
    for previous, current in zip(plan, plan[1:]):
        assert previous.end == current.start
    assert all(0 < r.length <= chunk_size for r in plan)
    assert sum(r.length for r in plan) == size
    assert len(plan) == chunker.total_parts(size, chunk_size)


def test_split_is_reproducible():
    assert chunker.split(12345, 100) == chunker.split(12345, 100)


def test_empty_file_has_no_parts():
    assert chunker.split(0, 2 * MiB) == []
    assert chunker.total_parts(0) == 0


@pytest.mark.parametrize("size,chunk_size", [(10, 0), (10, -1), (-1, 10)])
def test_invalid_inputs_are_rejected(size, chunk_size):
    with pytest.raises(ValueError):
        chunker.split(size, chunk_size)


def test_part_range_matches_split():
    plan = chunker.split(5 * MiB, 2 * MiB)
    for expected in plan:
        assert chunker.part_range(5 * MiB, 2 * MiB, expected.part_number) == expected


@pytest.mark.parametrize("part_number", [0, 4, -1])
def test_part_range_outside_plan(part_number):
    with pytest.raises(ValueError):
        chunker.part_range(5 * MiB, 2 * MiB, part_number)
