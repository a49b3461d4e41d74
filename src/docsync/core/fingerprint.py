"""Content fingerprinting by SHA-256."""

import asyncio
import hashlib
from pathlib import Path
from typing import Union


DEFAULT_CHUNK_SIZE = 64 * 1024


def compute_file_hash(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Return the hex SHA-256 digest of a file's bytes.

    The file is streamed in fixed-size chunks, so memory use does not grow
    with file size. Read errors (permissions, file removed mid-read) are
    raised to the caller.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


async def compute_file_hash_async(path: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Hash a file in a worker thread so the event loop stays responsive."""
    return await asyncio.to_thread(compute_file_hash, path, chunk_size)
