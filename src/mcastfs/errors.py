"""
Error taxonomy for MCastFSv2 reassembly and extraction

Fatal errors abort the current decode or receive pass: once a record
boundary is misread every following offset is suspect. Per-file issues
(unresolved parents, missing files, failed writes and the like) are collected
by the extractor and never abort the batch.
"""

from typing import Optional


class McastFSError(Exception):
    """Base class for all MCastFSv2 errors"""


class MalformedRecord(McastFSError):
    """Not enough bytes for a fixed-width header or field"""

    def __init__(self, message: str, offset: Optional[int] = None):
        super().__init__(message)
        self.offset = offset


class UnsupportedRecordType(McastFSError):
    """Leading type byte is not one the format is known to use"""

    def __init__(self, record_type: int, offset: Optional[int] = None,
                 remaining: Optional[int] = None, context: str = ""):
        message = f"Unsupported record type 0x{record_type:02X}"
        if offset is not None:
            message += f" at offset 0x{offset:08X}"
        super().__init__(message)
        self.record_type = record_type
        self.offset = offset
        self.remaining = remaining
        self.context = context


class UnsupportedSegmentType(McastFSError):
    """Data record carries a segment type other than 0x0110 / 0x0312"""

    def __init__(self, segment_type: int, offset: Optional[int] = None):
        message = f"Unsupported data segment type 0x{segment_type:04X}"
        if offset is not None:
            message += f" at offset 0x{offset:08X}"
        super().__init__(message)
        self.segment_type = segment_type
        self.offset = offset


class TruncatedPayload(McastFSError):
    """File-data segment declares more bytes than the input holds"""

    def __init__(self, expected: int, available: int, offset: Optional[int] = None):
        super().__init__(
            f"Truncated payload: segment needs {expected} bytes, {available} remain"
        )
        self.expected = expected
        self.available = available
        self.offset = offset


class ReceiveTimeout(McastFSError):
    """No datagram arrived within the receive timeout"""

    def __init__(self, timeout: float):
        super().__init__(f"No firmware data received within {timeout:g} seconds")
        self.timeout = timeout


class ExtractionIssue(McastFSError):
    """
    Non-fatal, per-file condition.

    Instances are collected in an ExtractionReport rather than raised.
    """

    def __init__(self, message: str, entry_id: Optional[int] = None,
                 path: Optional[str] = None):
        super().__init__(message)
        self.entry_id = entry_id
        self.path = path


class UnresolvedParent(ExtractionIssue):
    """An ancestor directory record was never seen; path is partial"""


class MissingOrIncompleteFile(ExtractionIssue):
    """File entry was declared but its content never fully arrived"""


class CorruptStream(ExtractionIssue):
    """Compressed file failed to decompress"""


class UnsafePath(ExtractionIssue):
    """Resolved path would land outside the output directory"""


class WriteFailed(ExtractionIssue):
    """Creating a directory or writing a file failed on the local filesystem"""
