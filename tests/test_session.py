import io
import sys
import unittest
from pathlib import Path

src_path = str(Path(__file__).parent.parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from mcastfs.errors import ReceiveTimeout, UnsupportedRecordType
from mcastfs.packet_reassembler import ChunkReassembler
from mcastfs.session import ReceiveSession, SessionState, StopSignal

from image_builder import file_datagram, file_datagrams, file_entry, header_datagram

CONTENT = b'0123456789' * 30


def session_datagrams():
    header = [header_datagram(0, 1, [file_entry(4, 0, 'data.bin', len(CONTENT))], total_files=1)]
    return header + file_datagrams(4, CONTENT, 100)


class CountingSource:
    """Datagram source that records how many datagrams were pulled"""

    def __init__(self, datagrams, then=None):
        self.datagrams = datagrams
        self.then = then
        self.pulled = 0

    def __iter__(self):
        for datagram in self.datagrams:
            self.pulled += 1
            yield datagram
        if self.then is not None:
            raise self.then


class TestReceiveSession(unittest.TestCase):
    def test_stops_when_complete(self):
        datagrams = session_datagrams()
        source = CountingSource(datagrams * 3)
        reassembler = ChunkReassembler()
        session = ReceiveSession(source, reassembler)

        self.assertEqual(session.run(), SessionState.COMPLETE)
        self.assertEqual(source.pulled, len(datagrams))
        self.assertEqual(reassembler.decoder.state.buffers[4].tobytes(), CONTENT)
        self.assertEqual(session.metrics.streams_completed, 2)

    def test_duplicates_counted(self):
        datagrams = session_datagrams()
        source = CountingSource([datagrams[1], datagrams[1]] + datagrams)
        session = ReceiveSession(source, ChunkReassembler())

        self.assertEqual(session.run(), SessionState.COMPLETE)
        self.assertEqual(session.metrics.duplicates, 2)
        self.assertEqual(session.metrics.datagrams_accepted, len(datagrams))
        self.assertEqual(session.metrics.datagrams_seen, len(datagrams) + 2)

    def test_exhausted_source_flushes_partial(self):
        datagrams = session_datagrams()[:-1]
        reassembler = ChunkReassembler()
        session = ReceiveSession(CountingSource(datagrams), reassembler)

        self.assertEqual(session.run(), SessionState.EXHAUSTED)
        buffer = reassembler.decoder.state.buffers[4]
        self.assertEqual(buffer.missing_ranges(), [(200, 300)])

    def test_no_flush_when_disabled(self):
        datagrams = session_datagrams()[:-1]
        reassembler = ChunkReassembler()
        session = ReceiveSession(CountingSource(datagrams), reassembler, flush_incomplete=False)

        session.run()
        self.assertNotIn(4, reassembler.decoder.state.buffers)

    def test_stop_signal_checked_before_receive(self):
        stop = StopSignal()
        stop.request()
        source = CountingSource(session_datagrams())
        session = ReceiveSession(source, ChunkReassembler(), stop_signal=stop)

        self.assertEqual(session.run(), SessionState.STOPPED)
        self.assertEqual(source.pulled, 0)

    def test_timeout_raised_to_caller(self):
        datagrams = session_datagrams()[:2]
        reassembler = ChunkReassembler()
        session = ReceiveSession(CountingSource(datagrams, then=ReceiveTimeout(5.0)), reassembler)

        with self.assertRaises(ReceiveTimeout):
            session.run()
        self.assertEqual(session.state, SessionState.TIMED_OUT)
        self.assertIn(4, reassembler.decoder.state.buffers)

    def test_protocol_error_fails_session(self):
        source = CountingSource([file_datagram(1, 1, 0, b'x', 0, 2), b'\x05' + b'\x00' * 20])
        session = ReceiveSession(source, ChunkReassembler())

        with self.assertRaises(UnsupportedRecordType):
            session.run()
        self.assertEqual(session.state, SessionState.FAILED)

    def test_watch_stdin(self):
        stop = StopSignal()
        thread = stop.watch_stdin(io.StringIO('\n'))
        thread.join(timeout=2)
        self.assertTrue(stop.requested)


if __name__ == '__main__':
    unittest.main()
