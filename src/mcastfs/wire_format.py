"""
MCastFSv2 multicast datagram records

Every datagram starts with an 8-byte common header:

    offset  size  field
    0       4     record id (big-endian; the top byte is the record family)
    4       2     sequence index within the logical stream
    6       2     sequence total of the logical stream

followed by a family-specific tail:

    Header record (0x01)                 File record (0x03)
    8   2  total files                   8   2  file id
    10  4  unknown                       10  4  file size
    14  2  payload offset                14  4  byte offset
                                         18  -  file bytes

Header records of the synthetic stream 0 carry the container's entry
records; file records carry raw file bytes placed at their byte offset.
"""

import struct
from dataclasses import dataclass
from typing import Union

from .errors import MalformedRecord, UnsupportedRecordType

HEADER_RECORD_TYPE = 0x01
FILE_RECORD_TYPE = 0x03

MAX_DATAGRAM_SIZE = 1500
DEDUP_KEY_SIZE = 10

# Logical id of the synthetic header stream
HEADER_STREAM_ID = 0

COMMON_HEADER = struct.Struct('>IHH')
HEADER_RECORD_TAIL = struct.Struct('>HIH')
FILE_RECORD_TAIL = struct.Struct('>HII')

# Size of a file record header; also the base offset of header-record payloads
DATAGRAM_HEADER_SIZE = COMMON_HEADER.size + FILE_RECORD_TAIL.size
HEADER_RECORD_SIZE = COMMON_HEADER.size + HEADER_RECORD_TAIL.size


@dataclass
class RecordHeader:
    """Parsed common datagram header"""
    record_id: int
    sequence_index: int
    sequence_total: int

    @property
    def record_type(self) -> int:
        return (self.record_id >> 24) & 0xFF


@dataclass
class HeaderRecord:
    """Datagram of the header stream (entry records of the container)"""
    header: RecordHeader
    total_files: int  # Advisory; not used for completion
    raw: bytes

    @property
    def logical_id(self) -> int:
        return HEADER_STREAM_ID

    @property
    def sequence_index(self) -> int:
        return self.header.sequence_index

    @property
    def sequence_total(self) -> int:
        return self.header.sequence_total


@dataclass
class FileRecord:
    """Datagram carrying a slice of one file"""
    header: RecordHeader
    file_id: int
    file_size: int
    byte_offset: int
    raw: bytes

    @property
    def logical_id(self) -> int:
        return self.file_id

    @property
    def sequence_index(self) -> int:
        return self.header.sequence_index

    @property
    def sequence_total(self) -> int:
        return self.header.sequence_total

    @property
    def payload(self) -> bytes:
        return self.raw[DATAGRAM_HEADER_SIZE:]


Record = Union[HeaderRecord, FileRecord]


def dedup_key(data: bytes) -> bytes:
    """
    Duplicate-suppression key: the first 10 bytes of the datagram.

    Two distinct datagrams sharing these bytes are indistinguishable;
    kept for compatibility with existing captures.
    """
    return bytes(data[:DEDUP_KEY_SIZE])


def parse_record_header(data: bytes) -> RecordHeader:
    """
    Parse the 8-byte common header.

    Raises:
        MalformedRecord: fewer than 8 bytes available
    """
    if len(data) < COMMON_HEADER.size:
        raise MalformedRecord(
            f"Datagram of {len(data)} bytes is shorter than the "
            f"{COMMON_HEADER.size}-byte record header", offset=0)

    record_id, sequence_index, sequence_total = COMMON_HEADER.unpack_from(data, 0)
    return RecordHeader(
        record_id=record_id,
        sequence_index=sequence_index,
        sequence_total=sequence_total,
    )


def parse_record(data: bytes) -> Record:
    """
    Parse a raw datagram into a typed record.

    Args:
        data: Raw datagram bytes (at most 1500)

    Returns:
        HeaderRecord or FileRecord

    Raises:
        MalformedRecord: datagram too large or too short for its headers
        UnsupportedRecordType: record family other than 0x01 / 0x03
    """
    if len(data) > MAX_DATAGRAM_SIZE:
        raise MalformedRecord(
            f"Datagram of {len(data)} bytes exceeds {MAX_DATAGRAM_SIZE} bytes")

    header = parse_record_header(data)
    data = bytes(data)

    if header.record_type == HEADER_RECORD_TYPE:
        if len(data) < HEADER_RECORD_SIZE:
            raise MalformedRecord(
                f"Header record of {len(data)} bytes is shorter than "
                f"{HEADER_RECORD_SIZE} bytes", offset=COMMON_HEADER.size)
        total_files, _unknown, _payload_offset = HEADER_RECORD_TAIL.unpack_from(
            data, COMMON_HEADER.size)
        return HeaderRecord(
            header=header,
            total_files=total_files,
            raw=data,
        )

    if header.record_type == FILE_RECORD_TYPE:
        if len(data) < DATAGRAM_HEADER_SIZE:
            raise MalformedRecord(
                f"File record of {len(data)} bytes is shorter than "
                f"{DATAGRAM_HEADER_SIZE} bytes", offset=COMMON_HEADER.size)
        file_id, file_size, byte_offset = FILE_RECORD_TAIL.unpack_from(
            data, COMMON_HEADER.size)
        return FileRecord(
            header=header,
            file_id=file_id,
            file_size=file_size,
            byte_offset=byte_offset,
            raw=data,
        )

    raise UnsupportedRecordType(header.record_type, offset=0)
