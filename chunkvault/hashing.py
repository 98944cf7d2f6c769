"""Content identifiers: SHA-256 rendered as lowercase hex."""
import hashlib
from pathlib import Path
from typing import BinaryIO, Union

from chunkvault.exceptions import ReadError

BLOCK_SIZE = 65536  # 64KB reads


class StreamingHasher:
    """Incremental SHA-256 over data fed in pieces."""

    def __init__(self):
        self._digest = hashlib.sha256()
        self.size = 0

    def update(self, data: bytes):
        self._digest.update(data)
        self.size += len(data)

    def hexdigest(self) -> str:
        return self._digest.hexdigest()


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_content_hash(source: Union[str, Path, BinaryIO], block_size: int = BLOCK_SIZE) -> str:
    """
    Hash a whole file without holding it in memory.

    ``source`` is a path or an open binary file object (read from its
    current position to EOF). Raises ReadError if the bytes cannot be read.
    """
    hasher = StreamingHasher()
    try:
        if isinstance(source, (str, Path)):
            with open(source, "rb") as f:
                _feed(hasher, f, block_size)
        else:
            _feed(hasher, source, block_size)
    except OSError as e:
        raise ReadError(f"Cannot read upload source: {e}") from e
    return hasher.hexdigest()


def _feed(hasher: StreamingHasher, f: BinaryIO, block_size: int):
    while True:
        block = f.read(block_size)
        if not block:
            break
        hasher.update(block)
