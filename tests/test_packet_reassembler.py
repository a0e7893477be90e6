import random
import sys
import unittest
from pathlib import Path

src_path = str(Path(__file__).parent.parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from mcastfs.errors import MalformedRecord, UnsupportedRecordType
from mcastfs.packet_reassembler import ChunkReassembler
from mcastfs.wire_format import (
    FileRecord, HeaderRecord, dedup_key, parse_record,
)

from image_builder import (
    directory, file_datagram, file_datagrams, file_entry, header_datagram,
)

KERNEL = bytes(range(256)) * 3
README = b'firmware notes\n'


def firmware_datagrams():
    """Header stream (1 directory, 2 files) followed by both file streams"""
    header = [
        header_datagram(0, 2, [directory(1, 0, 'boot'), file_entry(2, 1, 'kernel', len(KERNEL))],
                        total_files=2),
        header_datagram(1, 2, [file_entry(3, 0, 'README', len(README))], total_files=2),
    ]
    return header + file_datagrams(2, KERNEL, 200) + file_datagrams(3, README, 100)


class TestWireFormat(unittest.TestCase):
    def test_file_record(self):
        record = parse_record(file_datagram(7, 300, 100, b'abc', 1, 3))
        self.assertIsInstance(record, FileRecord)
        self.assertEqual(record.logical_id, 7)
        self.assertEqual(record.file_size, 300)
        self.assertEqual(record.byte_offset, 100)
        self.assertEqual(record.sequence_index, 1)
        self.assertEqual(record.sequence_total, 3)
        self.assertEqual(record.payload, b'abc')
        self.assertEqual(record.header.record_type, 0x03)

    def test_header_record(self):
        record = parse_record(header_datagram(0, 4, [], total_files=12))
        self.assertIsInstance(record, HeaderRecord)
        self.assertEqual(record.logical_id, 0)
        self.assertEqual(record.total_files, 12)
        self.assertEqual(record.sequence_total, 4)

    def test_short_datagram(self):
        with self.assertRaises(MalformedRecord):
            parse_record(b'\x03\x00\x00')

    def test_short_file_record_tail(self):
        with self.assertRaises(MalformedRecord):
            parse_record(file_datagram(7, 3, 0, b'', 0, 1)[:12])

    def test_oversized_datagram(self):
        with self.assertRaises(MalformedRecord):
            parse_record(file_datagram(7, 2000, 0, b'x' * 1500, 0, 1))

    def test_unsupported_record_type(self):
        with self.assertRaises(UnsupportedRecordType) as ctx:
            parse_record(b'\x02' + b'\x00' * 20)
        self.assertEqual(ctx.exception.record_type, 0x02)

    def test_dedup_key_is_first_ten_bytes(self):
        datagram = file_datagram(7, 3, 0, b'abc', 0, 1)
        self.assertEqual(dedup_key(datagram), datagram[:10])


class TestChunkReassembler(unittest.TestCase):
    def test_full_session(self):
        reassembler = ChunkReassembler()
        datagrams = firmware_datagrams()

        for datagram in datagrams[:-1]:
            reassembler.ingest(datagram)
            self.assertFalse(reassembler.is_complete)

        completed = reassembler.ingest(datagrams[-1])
        self.assertEqual(completed.logical_id, 3)
        self.assertTrue(reassembler.is_complete)
        self.assertEqual(reassembler.expected_files, 2)

        state = reassembler.decoder.state
        self.assertEqual(state.buffers[2].tobytes(), KERNEL)
        self.assertEqual(state.buffers[3].tobytes(), README)
        self.assertEqual(state.entries[1].name, 'boot')

    def test_header_stream_completion(self):
        reassembler = ChunkReassembler()
        datagrams = firmware_datagrams()
        self.assertIsNone(reassembler.ingest(datagrams[0]))
        completed = reassembler.ingest(datagrams[1])

        self.assertTrue(completed.is_header)
        self.assertEqual([r.sequence_index for r in completed.records], [0, 1])
        self.assertEqual(reassembler.expected_files, 2)

    def test_announced_file_count_mismatch_warns(self):
        reassembler = ChunkReassembler()
        header = header_datagram(0, 1, [file_entry(2, 0, 'only', 1)], total_files=3)

        with self.assertLogs('mcastfs.packet_reassembler', level='WARNING') as logs:
            completed = reassembler.ingest(header)

        self.assertTrue(completed.is_header)
        self.assertEqual(reassembler.expected_files, 1)
        self.assertIn('announce [3] files', logs.output[0])

    def test_files_before_header(self):
        reassembler = ChunkReassembler()
        datagrams = firmware_datagrams()
        for datagram in datagrams[2:] + datagrams[:2]:
            reassembler.ingest(datagram)
        self.assertTrue(reassembler.is_complete)
        self.assertEqual(reassembler.decoder.state.buffers[2].tobytes(), KERNEL)

    def test_shuffled_arrival(self):
        datagrams = firmware_datagrams()
        random.Random(1234).shuffle(datagrams)
        reassembler = ChunkReassembler()
        for datagram in datagrams:
            reassembler.ingest(datagram)
        self.assertTrue(reassembler.is_complete)
        self.assertEqual(reassembler.decoder.state.buffers[2].tobytes(), KERNEL)
        self.assertEqual(reassembler.decoder.state.buffers[3].tobytes(), README)

    def test_duplicates_ingested_once(self):
        reassembler = ChunkReassembler()
        datagram = file_datagram(5, 6, 0, b'abc', 0, 2)

        self.assertIsNone(reassembler.ingest(datagram))
        before = reassembler.get_stats()
        self.assertIsNone(reassembler.ingest(datagram))
        self.assertIsNone(reassembler.ingest(bytes(datagram)))
        after = reassembler.get_stats()

        self.assertEqual(after['duplicates'], 2)
        self.assertEqual(after['datagrams_accepted'], before['datagrams_accepted'])
        self.assertEqual(after['datagrams_accepted'], 1)
        self.assertEqual(after['datagrams_seen'], 3)
        self.assertEqual(after['streams_known'], before['streams_known'])
        self.assertEqual(after['streams_completed'], before['streams_completed'])
        self.assertEqual(reassembler.pending_streams(), [5])

    def test_completion_counts_distinct_indices(self):
        reassembler = ChunkReassembler()
        # Same index, different record id: survives dedup but adds no index
        self.assertIsNone(reassembler.ingest(file_datagram(5, 9, 3, b'def', 1, 3)))
        self.assertIsNone(reassembler.ingest(
            file_datagram(5, 9, 3, b'DEF', 1, 3, record_id=0x03FF0005)))
        self.assertFalse(reassembler.stream_complete(5))
        self.assertIsNone(reassembler.ingest(file_datagram(5, 9, 6, b'ghi', 2, 3)))
        self.assertFalse(reassembler.stream_complete(5))

        completed = reassembler.ingest(file_datagram(5, 9, 0, b'abc', 0, 3))
        self.assertIsNotNone(completed)
        self.assertTrue(reassembler.stream_complete(5))
        self.assertEqual([r.sequence_index for r in completed.records], [0, 1, 1, 2])
        # Repeated index: the later arrival wins
        self.assertEqual(reassembler.decoder.state.buffers[5].tobytes(), b'abcDEFghi')

    def test_records_after_completion_ignored(self):
        reassembler = ChunkReassembler()
        reassembler.ingest(file_datagram(5, 3, 0, b'abc', 0, 1))
        reassembler.ingest(file_datagram(5, 3, 0, b'xyz', 0, 1, record_id=0x03000099))
        self.assertEqual(reassembler.get_stats()['late_records'], 1)
        self.assertEqual(reassembler.decoder.state.buffers[5].tobytes(), b'abc')

    def test_not_complete_with_unannounced_stream(self):
        reassembler = ChunkReassembler()
        for datagram in firmware_datagrams():
            reassembler.ingest(datagram)
        reassembler_extra = ChunkReassembler()
        for datagram in firmware_datagrams() + [file_datagram(9, 1, 0, b'!', 0, 1)]:
            reassembler_extra.ingest(datagram)

        self.assertTrue(reassembler.is_complete)
        self.assertFalse(reassembler_extra.is_complete)

    def test_capture_mirrors_accepted_datagrams(self):
        captured = []

        class ListSink:
            def write(self, datagram):
                captured.append(datagram)

        reassembler = ChunkReassembler(capture=ListSink())
        datagram = file_datagram(5, 3, 0, b'abc', 0, 1)
        reassembler.ingest(datagram)
        reassembler.ingest(datagram)
        self.assertEqual(captured, [datagram])

    def test_unsupported_record_type_aborts(self):
        reassembler = ChunkReassembler()
        with self.assertRaises(UnsupportedRecordType):
            reassembler.ingest(b'\x09' + b'\x00' * 30)

    def test_flush_writes_partial_streams(self):
        reassembler = ChunkReassembler()
        datagrams = file_datagrams(2, KERNEL, 200)
        for datagram in datagrams[:2]:
            reassembler.ingest(datagram)
        reassembler.ingest(header_datagram(0, 2, [file_entry(2, 0, 'kernel')]))

        self.assertEqual(reassembler.flush(), 2)
        state = reassembler.decoder.state
        buffer = state.buffers[2]
        self.assertEqual(buffer.tobytes()[:400], KERNEL[:400])
        self.assertEqual(buffer.missing_ranges(), [(400, len(KERNEL))])
        self.assertEqual(state.entries[2].name, 'kernel')
        self.assertEqual(reassembler.expected_files, 1)


if __name__ == '__main__':
    unittest.main()
