#!/usr/bin/env python3
"""
Receive Session

Drives a datagram source (live multicast or capture replay) through the
chunk reassembler until the firmware image is complete, the source runs
dry, or the operator asks to stop.

Architecture:
    MulticastReceiver / CaptureReader → ReceiveSession → ChunkReassembler → ContainerDecoder

Cancellation is cooperative: the stop signal is checked at the top of
every iteration, never while a receive is blocking.
"""

import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, TextIO

from .errors import McastFSError, ReceiveTimeout
from .packet_reassembler import ChunkReassembler

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Receive session states"""
    IDLE = "idle"              # Not started
    RECEIVING = "receiving"    # Loop running
    COMPLETE = "complete"      # Every announced file reassembled
    STOPPED = "stopped"        # Stop requested by the operator
    EXHAUSTED = "exhausted"    # Replay source ran out of datagrams
    TIMED_OUT = "timed_out"    # Live source went silent
    FAILED = "failed"          # Protocol error


@dataclass
class SessionMetrics:
    """Cumulative session metrics"""
    datagrams_accepted: int = 0
    datagrams_seen: int = 0
    duplicates: int = 0
    streams_completed: int = 0
    session_start_time: float = field(default_factory=time.time)
    session_end_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        end = self.session_end_time if self.session_end_time is not None else time.time()
        return {
            'datagrams_accepted': self.datagrams_accepted,
            'datagrams_seen': self.datagrams_seen,
            'duplicates': self.duplicates,
            'streams_completed': self.streams_completed,
            'elapsed_seconds': end - self.session_start_time,
        }


class StopSignal:
    """Cooperative stop request shared with the receive loop"""

    def __init__(self):
        self._event = threading.Event()

    def request(self):
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def watch_stdin(self, stream: Optional[TextIO] = None) -> threading.Thread:
        """Request a stop when a line (Enter) arrives on stdin"""
        stream = stream if stream is not None else sys.stdin

        def _wait_for_key():
            if stream.readline():
                logger.info("Stop requested")
                self.request()

        thread = threading.Thread(target=_wait_for_key, name="stop-keypress", daemon=True)
        thread.start()
        return thread


class ReceiveSession:
    """
    Blocking receive loop.

    Example:
        reassembler = ChunkReassembler()
        session = ReceiveSession(CaptureReader('session.cap'), reassembler)
        state = session.run()
        extractor.extract(reassembler.decoder.state)
    """

    def __init__(self, source: Iterable[bytes], reassembler: ChunkReassembler,
                 stop_signal: Optional[StopSignal] = None,
                 flush_incomplete: bool = True,
                 progress_interval: float = 1.0):
        """
        Initialize receive session.

        Args:
            source: Iterable of raw datagrams
            reassembler: Reassembler receiving every datagram
            stop_signal: Optional operator stop request
            flush_incomplete: Write partially received streams when the
                loop ends before completion
            progress_interval: Seconds between progress log lines
        """
        self.source = source
        self.reassembler = reassembler
        self.stop_signal = stop_signal if stop_signal is not None else StopSignal()
        self.flush_incomplete = flush_incomplete
        self.progress_interval = progress_interval

        self.state = SessionState.IDLE
        self.metrics = SessionMetrics()

    def run(self) -> SessionState:
        """
        Receive until complete, stopped, or the source is exhausted.

        Returns:
            Final SessionState

        Raises:
            ReceiveTimeout: live source silent for the receive timeout
                (incomplete streams are flushed first)
            McastFSError: malformed or unsupported datagram
        """
        self.state = SessionState.RECEIVING
        self.metrics = SessionMetrics()
        iterator = iter(self.source)
        last_progress = time.monotonic()

        try:
            while True:
                if self.stop_signal.requested:
                    self.state = SessionState.STOPPED
                    break

                try:
                    datagram = next(iterator)
                except StopIteration:
                    self.state = SessionState.EXHAUSTED
                    break

                completed = self.reassembler.ingest(datagram)
                if completed is not None:
                    kind = "Header stream" if completed.is_header else f"File {completed.logical_id}"
                    logger.debug(f"{kind} complete ({len(completed.records)} datagrams)")

                if self.reassembler.is_complete:
                    self.state = SessionState.COMPLETE
                    break

                now = time.monotonic()
                if now - last_progress >= self.progress_interval:
                    self._log_progress()
                    last_progress = now

        except ReceiveTimeout:
            self.state = SessionState.TIMED_OUT
            self._finish()
            raise
        except McastFSError:
            self.state = SessionState.FAILED
            self._update_metrics()
            raise

        self._finish()
        return self.state

    def _finish(self):
        if self.state is not SessionState.COMPLETE and self.flush_incomplete:
            pending = self.reassembler.pending_streams()
            if pending:
                logger.warning(f"Session ended {self.state.value} with {len(pending)} incomplete streams")
                self.reassembler.flush()
        self._update_metrics()
        logger.info(
            f"Session {self.state.value}: {self.metrics.datagrams_accepted} datagrams, "
            f"{self.metrics.duplicates} duplicates, "
            f"{self.metrics.streams_completed} streams complete")

    def _update_metrics(self):
        stats = self.reassembler.get_stats()
        self.metrics.datagrams_accepted = stats['datagrams_accepted']
        self.metrics.datagrams_seen = stats['datagrams_seen']
        self.metrics.duplicates = stats['duplicates']
        self.metrics.streams_completed = stats['streams_completed']
        self.metrics.session_end_time = time.time()

    def _log_progress(self):
        stats = self.reassembler.get_stats()
        expected = stats['expected_files']
        target = f"/{expected + 1}" if expected is not None else ""
        logger.info(
            f"Receiving: {stats['datagrams_accepted']} datagrams "
            f"({stats['duplicates']} duplicates), "
            f"{stats['streams_completed']}{target} streams complete")
