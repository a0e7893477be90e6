#!/usr/bin/env python3
"""
Chunk Reassembler - Deduplicate and Regroup Multicast Datagrams

The firmware carousel repeats every datagram until the broadcast ends, so
a receiver sees each one many times and in no particular order. This
module drops repeats, groups datagrams by logical stream, and hands each
completed stream to the container decoder:

- stream 0 (header records) becomes the entry tree, which also tells us
  how many file streams to wait for
- every other stream is a file, written into its content buffer by the
  byte offset each datagram declares

Key principle: the session is done once every announced file is complete,
without knowing the file count up front.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Set

from .container_decoder import ContainerDecoder
from .wire_format import (
    HEADER_STREAM_ID, FileRecord, HeaderRecord, Record,
    dedup_key, parse_record,
)

logger = logging.getLogger(__name__)


class CaptureSink(Protocol):
    """Anything that can mirror accepted datagrams (see capture.CaptureWriter)"""

    def write(self, datagram: bytes) -> None:
        ...


@dataclass
class CompletedStream:
    """A logical stream whose every sequence index has arrived"""
    logical_id: int
    records: List[Record]  # Sorted by sequence index

    @property
    def is_header(self) -> bool:
        return self.logical_id == HEADER_STREAM_ID


class LogicalStream:
    """Records received so far for one logical id"""

    def __init__(self, logical_id: int, sequence_total: int):
        self.logical_id = logical_id
        self.sequence_total = sequence_total
        self.records: List[Record] = []
        self.indices: Set[int] = set()
        self.complete = False

    def add(self, record: Record):
        if record.sequence_total != self.sequence_total:
            logger.debug(
                f"Stream {self.logical_id}: record {record.sequence_index} declares "
                f"total {record.sequence_total}, keeping {self.sequence_total}")
        self.records.append(record)
        self.indices.add(record.sequence_index)

    @property
    def received(self) -> int:
        return len(self.indices)

    @property
    def has_all_parts(self) -> bool:
        return self.received == self.sequence_total

    def sorted_records(self) -> List[Record]:
        # Stable: for repeated indices the later arrival sorts last and wins
        return sorted(self.records, key=lambda r: r.sequence_index)


class ChunkReassembler:
    """
    Deduplicate datagrams and reassemble logical streams.

    Design:
    - Dedup by the first 10 datagram bytes (heuristic, wire compatible)
    - One LogicalStream per logical id, completed by distinct index count
    - Header stream decoded as soon as it completes
    - File streams written into the decoder's content buffers, then released

    Example:
        reassembler = ChunkReassembler()
        for datagram in source:
            reassembler.ingest(datagram)
            if reassembler.is_complete:
                break
        state = reassembler.decoder.state
    """

    def __init__(self, decoder: Optional[ContainerDecoder] = None,
                 capture: Optional[CaptureSink] = None):
        """
        Initialize reassembler

        Args:
            decoder: Decoder whose state receives entries and file contents
            capture: Optional sink mirroring every accepted datagram
        """
        self.decoder = decoder if decoder is not None else ContainerDecoder()
        self.capture = capture

        self._seen_keys: Set[bytes] = set()
        self._streams: Dict[int, LogicalStream] = {}

        # Number of file streams announced by the header stream
        self.expected_files: Optional[int] = None

        # Statistics
        self.datagrams_seen = 0        # Every datagram, repeats included
        self.datagrams_accepted = 0    # First deliveries only
        self.duplicates = 0
        self.late_records = 0
        self.streams_completed = 0

    def ingest(self, datagram: bytes) -> Optional[CompletedStream]:
        """
        Process one raw datagram.

        Args:
            datagram: Raw UDP payload

        Returns:
            The stream this datagram completed, if any

        Raises:
            MalformedRecord: datagram too short for its record header
            UnsupportedRecordType: unknown record family (protocol mismatch)
        """
        self.datagrams_seen += 1

        key = dedup_key(datagram)
        if key in self._seen_keys:
            self.duplicates += 1
            return None
        self._seen_keys.add(key)
        self.datagrams_accepted += 1

        if self.capture is not None:
            self.capture.write(datagram)

        record = parse_record(datagram)
        stream = self._streams.get(record.logical_id)
        if stream is None:
            stream = LogicalStream(record.logical_id, record.sequence_total)
            self._streams[record.logical_id] = stream
            logger.debug(
                f"New stream {record.logical_id}: {record.sequence_total} datagrams expected")

        if stream.complete:
            self.late_records += 1
            return None

        stream.add(record)
        if not stream.has_all_parts:
            return None

        return self._complete(stream)

    def _complete(self, stream: LogicalStream) -> CompletedStream:
        records = stream.sorted_records()
        stream.complete = True
        stream.records = []
        self.streams_completed += 1

        if stream.logical_id == HEADER_STREAM_ID:
            self._apply_header(records)
        else:
            self._apply_file(records)

        return CompletedStream(logical_id=stream.logical_id, records=records)

    def _apply_header(self, records: List[Record]):
        header_records = [r for r in records if isinstance(r, HeaderRecord)]
        self.decoder.decode_header_records(header_records)
        self.expected_files = len(self.decoder.state.files)
        logger.info(
            f"Header stream complete: {self.expected_files} files, "
            f"{len(self.decoder.state.directories)} directories")
        # total_files is advisory; completion waits on decoded File entries
        announced = {r.total_files for r in header_records}
        if announced and announced != {self.expected_files}:
            logger.warning(
                f"Header records announce {sorted(announced)} files, "
                f"decoded {self.expected_files} file entries")

    def _apply_file(self, records: List[Record]):
        file_records = [r for r in records if isinstance(r, FileRecord)]
        if not file_records:
            return
        first = file_records[0]
        buffer = self.decoder.state.buffer_for(first.file_id, first.file_size)
        for record in file_records:
            buffer.write(record.byte_offset, record.payload)
        logger.debug(
            f"File stream {first.file_id} complete: {len(file_records)} datagrams, "
            f"{buffer.bytes_written}/{buffer.capacity} bytes")

    @property
    def is_complete(self) -> bool:
        """
        True when the header stream has been decoded, every known stream is
        complete, and the known streams are exactly the announced files
        plus the header stream.
        """
        if self.expected_files is None:
            return False
        if len(self._streams) != self.expected_files + 1:
            return False
        return all(stream.complete for stream in self._streams.values())

    def stream_complete(self, logical_id: int) -> bool:
        stream = self._streams.get(logical_id)
        return stream is not None and stream.complete

    def pending_streams(self) -> List[int]:
        """Logical ids seen but not yet complete"""
        return sorted(lid for lid, s in self._streams.items() if not s.complete)

    def flush(self) -> int:
        """
        Write whatever arrived of incomplete streams (for shutdown).

        The header stream is decoded from the records received so far if
        it never completed; file streams are written into their buffers
        with the missing ranges left zero.

        Returns:
            Number of incomplete streams flushed
        """
        flushed = 0
        for logical_id in self.pending_streams():
            stream = self._streams[logical_id]
            records = stream.sorted_records()
            logger.warning(
                f"Stream {logical_id} incomplete: {stream.received}/{stream.sequence_total} datagrams")
            if logical_id == HEADER_STREAM_ID:
                self._apply_header(records)
            else:
                self._apply_file(records)
            stream.records = []
            flushed += 1
        return flushed

    def get_stats(self) -> dict:
        """Get reassembler statistics"""
        return {
            'datagrams_seen': self.datagrams_seen,
            'datagrams_accepted': self.datagrams_accepted,
            'duplicates': self.duplicates,
            'late_records': self.late_records,
            'streams_known': len(self._streams),
            'streams_completed': self.streams_completed,
            'expected_files': self.expected_files,
        }
