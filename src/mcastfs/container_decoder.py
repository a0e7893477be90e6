#!/usr/bin/env python3
"""
MCastFSv2 Container Decoder

Walks the tag stream of an MCastFSv2 container and rebuilds the entry
tree and the file contents. The same tag loop serves two sources:

- a container file: 34-byte preamble, then tagged records to end of file
- the header stream of a live multicast session: the entry records
  carried in each header datagram

Record layouts (big-endian):

    Entry record (tag 0x00, which is also the high byte of the id)
        id:2  parent:2  reserved:2  mode:2  reserved:4  size:4  mtime:4
        name_length:2  name:name_length

    Data record (tag 0x04)
        tag:1  reserved:1  segment_length:2  segment_type:2
        0x0110  14 unknown bytes
        0x0312  reserved:2  part:2  reserved:2  file_id:2  file_size:4
                byte_offset:4  data:(segment_length - 18)

Parsing is position directed: records are not self-describing, so any
unknown tag or short read aborts the decode.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from .directory_tree import DirectoryTree, Entry, EntryKind
from .errors import (
    MalformedRecord, McastFSError, TruncatedPayload,
    UnsupportedRecordType, UnsupportedSegmentType,
)
from .wire_format import DATAGRAM_HEADER_SIZE, HeaderRecord

logger = logging.getLogger(__name__)

ENTRY_TAG = 0x00
DATA_TAG = 0x04

SEGMENT_AUXILIARY = 0x0110
SEGMENT_FILE_DATA = 0x0312
AUXILIARY_SEGMENT_SIZE = 14
# Bytes of segment_length taken up by the file-data sub-header
FILE_DATA_OVERHEAD = 18

CONTAINER_MAGIC = b'MCastFS2'

# version:2 magic:8 unknown:18 record_count:2 reserved:4
PREAMBLE = struct.Struct('>H8s18sH4s')
ENTRY_RECORD = struct.Struct('>HHHBBIIIH')
DATA_RECORD = struct.Struct('>BBHH')
FILE_DATA_SEGMENT = struct.Struct('>HHHHII')

# Live header datagrams: the first carries 20 extra bytes of stream
# metadata, later ones start 2 bytes before the datagram header ends
FIRST_HEADER_PAYLOAD_SHIFT = 20
NEXT_HEADER_PAYLOAD_SHIFT = -2

DIAGNOSTIC_CONTEXT = 16


class DecoderPhase(Enum):
    """Decode state machine"""
    PREAMBLE = "preamble"
    TAG_LOOP = "tag_loop"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ContainerPreamble:
    """Fixed fields at the start of a container file"""
    version: int
    magic: bytes
    record_count: int

    @property
    def has_magic(self) -> bool:
        return self.magic == CONTAINER_MAGIC


class FileContentBuffer:
    """
    Reassembly buffer for one file.

    Capacity is fixed at the first chunk seen for the file. Bytes never
    written stay zero; overlapping writes are last-writer-wins.
    """

    def __init__(self, file_id: int, capacity: int):
        self.file_id = file_id
        self.capacity = capacity
        self.data = np.zeros(capacity, dtype=np.uint8)
        self._written = np.zeros(capacity, dtype=bool)
        self.chunks_written = 0

    def write(self, offset: int, payload: bytes):
        """
        Copy a chunk into the buffer.

        Raises:
            MalformedRecord: chunk does not fit in [0, capacity)
        """
        end = offset + len(payload)
        if offset < 0 or end > self.capacity:
            raise MalformedRecord(
                f"File {self.file_id}: chunk [{offset}, {end}) exceeds "
                f"declared size {self.capacity}")
        self.data[offset:end] = np.frombuffer(payload, dtype=np.uint8)
        self._written[offset:end] = True
        self.chunks_written += 1

    @property
    def bytes_written(self) -> int:
        return int(np.count_nonzero(self._written))

    @property
    def is_complete(self) -> bool:
        return self.bytes_written == self.capacity

    def missing_ranges(self) -> List[Tuple[int, int]]:
        """Half-open byte ranges never written"""
        missing = (~self._written).astype(np.int8)
        if not missing.any():
            return []
        edges = np.diff(np.concatenate(([0], missing, [0])))
        starts = np.flatnonzero(edges == 1)
        ends = np.flatnonzero(edges == -1)
        return list(zip(starts.tolist(), ends.tolist()))

    def tobytes(self) -> bytes:
        return self.data.tobytes()


@dataclass
class DecoderState:
    """Everything decoded so far; survives a failed decode for inspection"""
    entries: Dict[int, Entry] = field(default_factory=dict)
    buffers: Dict[int, FileContentBuffer] = field(default_factory=dict)
    phase: DecoderPhase = DecoderPhase.PREAMBLE
    preamble: Optional[ContainerPreamble] = None
    unclassified: int = 0
    auxiliary_segments: int = 0
    data_segments: int = 0

    @property
    def directories(self) -> Dict[int, Entry]:
        return {eid: e for eid, e in self.entries.items() if e.kind is EntryKind.DIRECTORY}

    @property
    def files(self) -> Dict[int, Entry]:
        return {eid: e for eid, e in self.entries.items() if e.kind is EntryKind.FILE}

    def buffer_for(self, file_id: int, declared_size: int) -> FileContentBuffer:
        """Existing buffer for file_id, or a new one of declared_size"""
        buffer = self.buffers.get(file_id)
        if buffer is None:
            buffer = FileContentBuffer(file_id, declared_size)
            self.buffers[file_id] = buffer
        elif buffer.capacity != declared_size:
            logger.debug(
                f"File {file_id}: chunk declares size {declared_size}, "
                f"keeping first-seen size {buffer.capacity}")
        return buffer

    def tree(self) -> DirectoryTree:
        return DirectoryTree(self.entries)


class _Cursor:
    """Bounds-checked read position over an immutable byte string"""

    def __init__(self, data: bytes, position: int = 0):
        self.data = data
        self.position = position

    @property
    def remaining(self) -> int:
        return len(self.data) - self.position

    def unpack(self, fmt: struct.Struct) -> tuple:
        if self.remaining < fmt.size:
            raise MalformedRecord(
                f"Need {fmt.size} bytes at offset 0x{self.position:08X}, "
                f"{max(self.remaining, 0)} remain", offset=self.position)
        values = fmt.unpack_from(self.data, self.position)
        self.position += fmt.size
        return values

    def take(self, size: int) -> bytes:
        if self.remaining < size:
            raise MalformedRecord(
                f"Need {size} bytes at offset 0x{self.position:08X}, "
                f"{max(self.remaining, 0)} remain", offset=self.position)
        chunk = self.data[self.position:self.position + size]
        self.position += size
        return chunk

    def skip(self, size: int):
        self.take(size)

    def peek_byte(self) -> int:
        return self.data[self.position]

    def context(self) -> str:
        """Hex dump of the bytes around the cursor, split at the cursor"""
        before = self.data[max(self.position - DIAGNOSTIC_CONTEXT, 0):self.position]
        after = self.data[self.position:self.position + DIAGNOSTIC_CONTEXT]
        return f"{before.hex(' ').upper()} * {after.hex(' ').upper()}"


class ContainerDecoder:
    """
    Decodes MCastFSv2 tag streams into a DecoderState.

    One decoder accumulates state across calls, so a live session can feed
    the header stream and the file streams into the same state.

    Example:
        decoder = ContainerDecoder()
        state = decoder.decode_file('firmware.bin')
        for entry, resolved in state.tree().files():
            data = state.buffers[entry.entry_id].tobytes()
    """

    def __init__(self, state: Optional[DecoderState] = None):
        self.state = state if state is not None else DecoderState()

    def decode_file(self, path: Union[str, Path]) -> DecoderState:
        """Read and decode a container file"""
        path = Path(path)
        data = path.read_bytes()
        logger.info(f"Decoding container '{path.name}': {len(data)} bytes")
        return self.decode_container(data)

    def decode_container(self, data: bytes) -> DecoderState:
        """
        Decode a complete container image (preamble + tag stream).

        Raises:
            MalformedRecord, UnsupportedRecordType, UnsupportedSegmentType,
            TruncatedPayload: the stream cannot be parsed further; state
            decoded before the failure stays on self.state
        """
        cursor = _Cursor(bytes(data))
        self.state.phase = DecoderPhase.PREAMBLE
        try:
            self.state.preamble = self._read_preamble(cursor)
            self.state.phase = DecoderPhase.TAG_LOOP
            self._tag_loop(cursor)
        except McastFSError:
            self.state.phase = DecoderPhase.FAILED
            raise
        self.state.phase = DecoderPhase.DONE
        logger.info(
            f"Container decoded: {len(self.state.directories)} directories, "
            f"{len(self.state.files)} files, {len(self.state.buffers)} file buffers")
        return self.state

    def decode_header_records(self, records: Iterable[HeaderRecord]) -> DecoderState:
        """
        Decode the entry records carried by a live header stream.

        Args:
            records: Header records of stream 0, in any order
        """
        self.state.phase = DecoderPhase.TAG_LOOP
        try:
            for record in sorted(records, key=lambda r: r.sequence_index):
                start = DATAGRAM_HEADER_SIZE + (
                    FIRST_HEADER_PAYLOAD_SHIFT if record.sequence_index == 0
                    else NEXT_HEADER_PAYLOAD_SHIFT)
                if start >= len(record.raw):
                    logger.debug(f"Header record {record.sequence_index} carries no entries")
                    continue
                self._tag_loop(_Cursor(record.raw, start))
        except McastFSError:
            self.state.phase = DecoderPhase.FAILED
            raise
        self.state.phase = DecoderPhase.DONE
        logger.info(
            f"Header stream decoded: {len(self.state.directories)} directories, "
            f"{len(self.state.files)} files")
        return self.state

    def _read_preamble(self, cursor: _Cursor) -> ContainerPreamble:
        version, magic, _unknown, record_count, _reserved = cursor.unpack(PREAMBLE)
        preamble = ContainerPreamble(version=version, magic=magic, record_count=record_count)
        if not preamble.has_magic:
            logger.warning(f"Container magic is {magic!r}, expected {CONTAINER_MAGIC!r}")
        logger.debug(f"Preamble: version=0x{version:04X}, records={record_count}")
        return preamble

    def _tag_loop(self, cursor: _Cursor):
        while cursor.remaining > 0:
            tag = cursor.peek_byte()
            if tag == ENTRY_TAG:
                self._read_entry(cursor)
            elif tag == DATA_TAG:
                self._read_data(cursor)
            else:
                context = cursor.context()
                logger.error(
                    f"Unknown record type 0x{tag:02X}, 16 bytes before and after: {context}")
                logger.error(
                    f"Position 0x{cursor.position:08X}, remaining 0x{cursor.remaining:08X}")
                raise UnsupportedRecordType(
                    tag, offset=cursor.position, remaining=cursor.remaining, context=context)

    def _read_entry(self, cursor: _Cursor):
        # The tag byte doubles as the high byte of the entry id
        (entry_id, parent_id, _reserved, kind_byte, mode_low,
         _reserved2, declared_size, mtime, name_length) = cursor.unpack(ENTRY_RECORD)

        if name_length <= 0:
            return

        raw_name = cursor.take(name_length)
        if entry_id in self.state.entries:
            return

        if raw_name.endswith(b'\x00'):
            raw_name = raw_name[:-1]
        name = raw_name.decode('utf-8', errors='surrogateescape')

        try:
            kind = EntryKind(kind_byte)
        except ValueError:
            self.state.unclassified += 1
            logger.debug(f"Entry {entry_id} ({name}): unrecognised kind 0x{kind_byte:02X}, dropped")
            return

        self.state.entries[entry_id] = Entry(
            entry_id=entry_id,
            parent_id=parent_id,
            kind=kind,
            name=name,
            mode=(kind_byte << 8) | mode_low,
            declared_size=declared_size,
            mtime=mtime,
        )

    def _read_data(self, cursor: _Cursor):
        record_offset = cursor.position
        _tag, _reserved, segment_length, segment_type = cursor.unpack(DATA_RECORD)

        if segment_type == SEGMENT_AUXILIARY:
            cursor.skip(AUXILIARY_SEGMENT_SIZE)
            self.state.auxiliary_segments += 1
            return

        if segment_type != SEGMENT_FILE_DATA:
            raise UnsupportedSegmentType(segment_type, offset=record_offset)

        (_reserved, part, _reserved2, file_id,
         file_size, byte_offset) = cursor.unpack(FILE_DATA_SEGMENT)

        payload_length = segment_length - FILE_DATA_OVERHEAD
        if payload_length < 0:
            raise MalformedRecord(
                f"Data segment length {segment_length} is shorter than its "
                f"{FILE_DATA_OVERHEAD}-byte header", offset=record_offset)
        if cursor.remaining < payload_length:
            raise TruncatedPayload(payload_length, cursor.remaining, offset=record_offset)

        payload = cursor.take(payload_length)
        self.state.buffer_for(file_id, file_size).write(byte_offset, payload)
        self.state.data_segments += 1
        logger.debug(
            f"File {file_id} part {part}: {payload_length} bytes at offset {byte_offset}")
