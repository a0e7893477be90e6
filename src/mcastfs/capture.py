"""
Capture files: recorded multicast sessions for offline replay

A capture is a plain sequence of records

    length:4 (big-endian)  datagram:length

in arrival order, duplicates already removed by the reassembler.
"""

import logging
import struct
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Union

logger = logging.getLogger(__name__)

LENGTH_PREFIX = struct.Struct('>I')


class CaptureWriter:
    """
    Append-only capture sink.

    Example:
        with CaptureWriter('session.cap') as capture:
            reassembler = ChunkReassembler(capture=capture)
    """

    def __init__(self, path: Union[str, Path], append: bool = False):
        self.path = Path(path)
        self.append = append
        self.records_written = 0
        self._file: Optional[BinaryIO] = None

    def open(self) -> 'CaptureWriter':
        if self._file is None:
            self._file = open(self.path, 'ab' if self.append else 'wb')
            logger.info(f"Saving capture to {self.path}")
        return self

    def write(self, datagram: bytes):
        if self._file is None:
            self.open()
        self._file.write(LENGTH_PREFIX.pack(len(datagram)))
        self._file.write(datagram)
        self.records_written += 1

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None
            logger.info(f"Capture closed: {self.records_written} datagrams in {self.path}")

    def __enter__(self) -> 'CaptureWriter':
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()


class CaptureReader:
    """
    Replays a capture file as a datagram source.

    A truncated final record (interrupted capture) ends the replay with a
    warning instead of an error.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.records_read = 0

    def __iter__(self) -> Iterator[bytes]:
        with open(self.path, 'rb') as f:
            while True:
                prefix = f.read(LENGTH_PREFIX.size)
                if not prefix:
                    break
                if len(prefix) < LENGTH_PREFIX.size:
                    logger.warning(
                        f"{self.path.name}: truncated length prefix after "
                        f"{self.records_read} records, stopping replay")
                    break
                (length,) = LENGTH_PREFIX.unpack(prefix)
                datagram = f.read(length)
                if len(datagram) < length:
                    logger.warning(
                        f"{self.path.name}: record {self.records_read} truncated "
                        f"({len(datagram)}/{length} bytes), stopping replay")
                    break
                self.records_read += 1
                yield datagram
        logger.info(f"Replayed {self.records_read} datagrams from {self.path.name}")
