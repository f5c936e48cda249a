"""
Bounded in-process pipe shared by the streaming producer/consumer pairs.

The kernel pipe buffer bounds the amount of data in flight: a writer blocks
once the pipe is full until the reader catches up, so both ends must run on
different threads.
"""

import os
from typing import BinaryIO, Tuple

CHUNK_SIZE = 64 * 1024


def open_pipe() -> Tuple[BinaryIO, BinaryIO]:
    """
    Open a bounded pipe.

    Returns:
        (reader, writer) binary file objects. The writer is unbuffered so
        every write reaches the reader without an explicit flush.
    """
    read_fd, write_fd = os.pipe()
    return os.fdopen(read_fd, "rb"), os.fdopen(write_fd, "wb", buffering=0)


def drain(reader: BinaryIO) -> int:
    """Read and discard everything left in the pipe so the writer never blocks."""
    discarded = 0
    for chunk in iter(lambda: reader.read(CHUNK_SIZE), b""):
        discarded += len(chunk)
    return discarded
