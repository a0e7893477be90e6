"""
MCastFS Extractor - rebuild MCastFSv2 firmware images

Reassembles the filesystem image broadcast over UDP multicast during a
set-top box firmware update, from the live broadcast, from a saved
capture of it, or from a raw container file, and extracts its files.

Quick Start:
    from mcastfs import ContainerDecoder, Extractor

    decoder = ContainerDecoder()
    state = decoder.decode_file('firmware.bin')
    report = Extractor('out').extract(state)

Live reception:
    from mcastfs import ChunkReassembler, MulticastReceiver, ReceiveSession

    reassembler = ChunkReassembler()
    with MulticastReceiver('239.255.1.1', 5000) as receiver:
        ReceiveSession(receiver, reassembler).run()
    Extractor('out').extract(reassembler.decoder.state)
"""

__version__ = "0.2.0"

from .errors import (
    McastFSError, MalformedRecord, UnsupportedRecordType, UnsupportedSegmentType,
    TruncatedPayload, ReceiveTimeout, ExtractionIssue, UnresolvedParent,
    MissingOrIncompleteFile, CorruptStream, UnsafePath, WriteFailed,
)
from .wire_format import HeaderRecord, FileRecord, RecordHeader, parse_record
from .directory_tree import DirectoryTree, Entry, EntryKind, ResolvedPath
from .container_decoder import (
    ContainerDecoder, DecoderState, DecoderPhase, FileContentBuffer, ContainerPreamble,
)
from .packet_reassembler import ChunkReassembler, CompletedStream
from .capture import CaptureReader, CaptureWriter
from .multicast_receiver import MulticastReceiver
from .session import ReceiveSession, SessionState, SessionMetrics, StopSignal
from .extractor import Extractor, ExtractionReport
from .config_utils import AppConfig, load_config

__all__ = [
    # Decoding
    "ContainerDecoder",
    "DecoderState",
    "DecoderPhase",
    "FileContentBuffer",
    "ContainerPreamble",
    "DirectoryTree",
    "Entry",
    "EntryKind",
    "ResolvedPath",
    # Multicast
    "ChunkReassembler",
    "CompletedStream",
    "HeaderRecord",
    "FileRecord",
    "RecordHeader",
    "parse_record",
    "MulticastReceiver",
    "CaptureReader",
    "CaptureWriter",
    "ReceiveSession",
    "SessionState",
    "SessionMetrics",
    "StopSignal",
    # Extraction
    "Extractor",
    "ExtractionReport",
    # Configuration
    "AppConfig",
    "load_config",
    # Errors
    "McastFSError",
    "MalformedRecord",
    "UnsupportedRecordType",
    "UnsupportedSegmentType",
    "TruncatedPayload",
    "ReceiveTimeout",
    "ExtractionIssue",
    "UnresolvedParent",
    "MissingOrIncompleteFile",
    "CorruptStream",
    "UnsafePath",
    "WriteFailed",
]
