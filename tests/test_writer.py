"""
Tests for the block writer and segmenter
"""

import io
import os
import tempfile
import unittest
from ipaddress import IPv4Address

import cbor2

from models.block import BlockStatistics
from models.flags import FlagSet
from models.parameters import BlockParameters, StorageParameters
from models.records import AddressEventType, Timestamp, Transport, TransportFlags
from cdns_codec.exceptions import IndexOutOfRangeError, PolicyViolationError
from cdns_codec.keys import BlockKeys, BlockPreambleKeys, QueryResponseKeys
from cdns_codec.reader import read_file
from cdns_codec.writer import BlockBuilder, CdnsWriter, encode_file

from tests.factories import (
    BASE_SECONDS,
    make_address_event,
    make_malformed_message,
    make_query_response,
    make_signature,
    write_records,
)


def small_blocks(max_block_items):
    return [BlockParameters(StorageParameters(max_block_items=max_block_items))]


class TestSegmentation(unittest.TestCase):
    """Blocks are cut at max_block_items"""

    def test_k_full_blocks_plus_remainder(self):
        for total, expected in ((7, [3, 3, 1]), (6, [3, 3]), (2, [2]), (0, [])):
            records = [make_query_response(ticks=i) for i in range(total)]
            _, blocks = read_file(write_records(records, small_blocks(3)))
            self.assertEqual([block.item_count for block in blocks], expected, total)

    def test_all_record_kinds_count_towards_the_limit(self):
        records = [make_query_response(), make_address_event(), make_malformed_message(),
                   make_query_response(ticks=5)]
        _, blocks = read_file(write_records(records, small_blocks(3)))
        self.assertEqual([block.item_count for block in blocks], [3, 1])
        self.assertEqual(len(blocks[0].query_responses), 1)
        self.assertEqual(len(blocks[0].address_event_counts), 1)
        self.assertEqual(len(blocks[0].malformed_messages), 1)

    def test_flush_returns_block_map(self):
        buffer = io.BytesIO()
        with CdnsWriter(buffer) as writer:
            self.assertIsNone(writer.flush())
            writer.add_record(make_query_response())
            self.assertEqual(writer.pending_items, 1)
            wire = writer.flush()
            self.assertEqual(len(wire[BlockKeys.QUERY_RESPONSES]), 1)
            self.assertEqual(writer.pending_items, 0)
            self.assertIsNone(writer.flush())
        self.assertEqual(writer.blocks_written, 1)

    def test_writer_requires_open(self):
        writer = CdnsWriter(io.BytesIO())
        with self.assertRaises(RuntimeError):
            writer.add_record(make_query_response())

    def test_closed_writer_rejects_records(self):
        buffer = io.BytesIO()
        writer = CdnsWriter(buffer)
        writer.open()
        writer.close()
        writer.close()
        with self.assertRaises(RuntimeError):
            writer.add_record(make_query_response())
        self.assertFalse(buffer.closed)

    def test_path_target(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "capture.cdns")
            with CdnsWriter(path) as writer:
                writer.add_record(make_query_response())
            preamble, blocks = read_file(path)
        self.assertEqual(len(blocks), 1)


class TestPolicyViolation(unittest.TestCase):
    """Rejected records never reach the block"""

    def test_opcode_not_in_declared_set(self):
        parameters = [BlockParameters(StorageParameters(opcodes=(0,)))]
        rejected = make_query_response(opcode=5, name=b"\x08rejected\x00")
        buffer = io.BytesIO()
        with CdnsWriter(buffer, block_parameters=parameters) as writer:
            writer.add_record(make_query_response(ticks=1))
            with self.assertRaises(PolicyViolationError):
                writer.add_record(rejected)
            writer.add_record(make_query_response(ticks=2))

        _, blocks = read_file(buffer.getvalue())
        self.assertEqual(len(blocks), 1)
        block = blocks[0]
        self.assertEqual(len(block.query_responses), 2)
        self.assertNotIn(rejected, block.query_responses)
        self.assertNotIn(b"\x08rejected\x00", list(block.tables.name_rdata))
        self.assertEqual(block.statistics.discarded_opcode, 1)
        self.assertEqual(writer.records_written, 2)

    def test_discards_carried_across_parameter_change(self):
        parameters = [BlockParameters(StorageParameters(opcodes=(0,))), BlockParameters()]
        buffer = io.BytesIO()
        with CdnsWriter(buffer, block_parameters=parameters) as writer:
            with self.assertRaises(PolicyViolationError):
                writer.add_record(make_query_response(opcode=5))
            writer.select_block_parameters(1)
            self.assertEqual(writer.blocks_written, 0)
            writer.add_record(make_query_response())

        _, blocks = read_file(buffer.getvalue())
        self.assertEqual(len(blocks), 1)
        self.assertEqual(blocks[0].preamble.block_parameters_index, 1)
        self.assertEqual(blocks[0].statistics.discarded_opcode, 1)

    def test_discards_without_records_written_on_close(self):
        parameters = [BlockParameters(StorageParameters(opcodes=(0,)))]
        buffer = io.BytesIO()
        with CdnsWriter(buffer, block_parameters=parameters) as writer:
            for _ in range(2):
                with self.assertRaises(PolicyViolationError):
                    writer.add_record(make_query_response(opcode=5))

        _, blocks = read_file(buffer.getvalue())
        self.assertEqual(len(blocks), 1)
        self.assertEqual(blocks[0].item_count, 0)
        self.assertEqual(blocks[0].statistics.discarded_opcode, 2)

    def test_negative_seconds_never_reach_the_file(self):
        buffer = io.BytesIO()
        with CdnsWriter(buffer) as writer:
            with self.assertRaises(PolicyViolationError):
                writer.add_record(make_query_response(timestamp=Timestamp(-5, 0)))
            writer.add_record(make_query_response())

        _, blocks = read_file(buffer.getvalue())
        self.assertEqual(blocks[0].preamble.earliest_time, Timestamp(BASE_SECONDS, 0))


class TestBlockContents(unittest.TestCase):
    """Block preamble, statistics and time offsets"""

    def test_time_offsets_from_earliest_record(self):
        builder = BlockBuilder(BlockParameters())
        builder.add(make_query_response(ticks=500))
        builder.add(make_query_response(ticks=200))
        wire = builder.build()
        preamble = wire[BlockKeys.BLOCK_PREAMBLE]
        self.assertEqual(preamble[BlockPreambleKeys.EARLIEST_TIME], [BASE_SECONDS, 200])
        self.assertNotIn(BlockPreambleKeys.BLOCK_PARAMETERS_INDEX, preamble)
        offsets = [qr[QueryResponseKeys.TIME_OFFSET] for qr in wire[BlockKeys.QUERY_RESPONSES]]
        self.assertEqual(offsets, [300, 0])

    def test_builder_is_single_use(self):
        builder = BlockBuilder(BlockParameters())
        builder.add(make_query_response())
        builder.build()
        self.assertTrue(builder.tables.name_rdata.frozen)
        with self.assertRaises(RuntimeError):
            builder.add(make_query_response())

    def test_statistics(self):
        records = [
            make_query_response(),
            make_query_response(signature=None),
            make_malformed_message(),
        ]
        _, blocks = read_file(write_records(records))
        self.assertEqual(blocks[0].statistics, BlockStatistics(
            processed_messages=4,
            qr_data_items=2,
            unmatched_queries=0,
            unmatched_responses=0,
            discarded_opcode=0,
            malformed_items=1,
        ))

    def test_unmatched_statistics(self):
        query_only = make_query_response(
            signature=make_signature(qr_sig_flags=FlagSet.of("has_query")))
        response_only = make_query_response(
            signature=make_signature(qr_sig_flags=FlagSet.of("has_response")))
        _, blocks = read_file(write_records([query_only, response_only, query_only]))
        statistics = blocks[0].statistics
        self.assertEqual(statistics.unmatched_queries, 2)
        self.assertEqual(statistics.unmatched_responses, 1)
        self.assertEqual(statistics.processed_messages, 3)

    def test_record_type_checked(self):
        builder = BlockBuilder(BlockParameters())
        with self.assertRaises(TypeError):
            builder.add("not a record")


class TestAddressEvents(unittest.TestCase):
    """Aggregation of address events"""

    def test_count_address_event_aggregates(self):
        buffer = io.BytesIO()
        tcp = TransportFlags(transport=Transport.TCP)
        with CdnsWriter(buffer) as writer:
            writer.count_address_event(AddressEventType.TCP_RESET, IPv4Address("192.0.2.1"),
                                       transport_flags=tcp)
            writer.count_address_event(AddressEventType.TCP_RESET, IPv4Address("192.0.2.1"),
                                       transport_flags=tcp, count=4)
            writer.count_address_event(AddressEventType.ICMP_DEST_UNREACHABLE,
                                       IPv4Address("192.0.2.1"), ae_code=3)
            self.assertEqual(writer.pending_items, 2)

        _, blocks = read_file(buffer.getvalue())
        events = blocks[0].address_event_counts
        self.assertEqual(len(events), 2)
        self.assertEqual(events[0].count, 5)
        self.assertEqual(events[0].transport_flags, tcp)
        self.assertEqual(events[1].ae_type, AddressEventType.ICMP_DEST_UNREACHABLE)
        self.assertEqual(events[1].ae_code, 3)
        self.assertEqual(events[1].count, 1)


class TestBlockParametersSelection(unittest.TestCase):
    """Several BlockParameters sets in one file"""

    def test_select_block_parameters(self):
        parameters = [
            BlockParameters(StorageParameters()),
            BlockParameters(StorageParameters(ticks_per_second=1000)),
        ]
        buffer = io.BytesIO()
        with CdnsWriter(buffer, block_parameters=parameters) as writer:
            writer.add_record(make_query_response())
            writer.select_block_parameters(1)
            self.assertEqual(writer.blocks_written, 1)
            writer.add_record(make_query_response(timestamp=Timestamp(BASE_SECONDS, 999)))
            with self.assertRaises(IndexOutOfRangeError):
                writer.select_block_parameters(2)

        preamble, blocks = read_file(buffer.getvalue())
        self.assertEqual(len(preamble.block_parameters), 2)
        self.assertEqual([block.preamble.block_parameters_index for block in blocks], [0, 1])
        self.assertEqual(blocks[1].parameters.storage_parameters.ticks_per_second, 1000)
        self.assertEqual(blocks[1].query_responses[0].timestamp, Timestamp(BASE_SECONDS, 999))

    def test_ticks_checked_against_selected_parameters(self):
        parameters = [BlockParameters(StorageParameters(ticks_per_second=1000))]
        with CdnsWriter(io.BytesIO(), block_parameters=parameters) as writer:
            with self.assertRaises(PolicyViolationError):
                writer.add_record(make_query_response(ticks=5000))


class TestEncodeFile(unittest.TestCase):
    """In-memory encoding with definite-length arrays"""

    def test_definite_layout(self):
        data = write_records([make_query_response()])
        preamble, blocks = read_file(data)
        encoded = encode_file(preamble, blocks)
        self.assertEqual(encoded[0], 0x83)
        decoded = cbor2.loads(encoded)
        self.assertEqual(decoded[0], "C-DNS")
        self.assertEqual(len(decoded[2]), 1)

    def test_streamed_layout(self):
        data = write_records([make_query_response()])
        self.assertEqual(data[0], 0x83)
        self.assertEqual(data[-1], 0xFF)

    def test_deterministic_output(self):
        records = [make_query_response(ticks=i, client=f"192.0.2.{i}") for i in range(10)]
        self.assertEqual(write_records(records), write_records(records))


if __name__ == "__main__":
    unittest.main()
