"""
Tests for the record encoder/decoder
"""

import unittest
from dataclasses import replace
from ipaddress import IPv4Address, IPv6Address

from models.flags import FlagSet
from models.parameters import BlockParameters, StorageHints, StorageParameters
from models.records import (
    NOT_COLLECTED,
    AddressEventCount,
    ClassType,
    MessageSections,
    QueryResponse,
    ResourceRecord,
    Timestamp,
    Transport,
    TransportFlags,
)
from cdns_codec.exceptions import CdnsFormatError, IndexOutOfRangeError, PolicyViolationError
from cdns_codec.keys import (
    AddressEventCountKeys,
    QueryResponseKeys,
    QueryResponseSignatureKeys,
)
from cdns_codec.records import RecordDecoder, RecordEncoder, decode_address
from cdns_codec.tables import BlockTables

from tests.factories import (
    EXAMPLE_COM,
    make_address_event,
    make_malformed_message,
    make_query_response,
    make_signature,
)


def encode_and_decode(record, parameters=None, earliest_time=None):
    """Encode one record into fresh tables and decode it back."""
    parameters = parameters or BlockParameters()
    tables = BlockTables()
    encoder = RecordEncoder(tables, parameters)
    if isinstance(record, QueryResponse):
        encoder.check_query_response(record)
        wire = encoder.encode_query_response(record)
        method = "decode_query_response"
    elif isinstance(record, AddressEventCount):
        encoder.check_address_event_count(record)
        wire = encoder.encode_address_event_count(record)
        method = "decode_address_event_count"
    else:
        encoder.check_malformed_message(record)
        wire = encoder.encode_malformed_message(record)
        method = "decode_malformed_message"
    tables.freeze()
    decoder = RecordDecoder(tables, parameters, earliest_time)
    return wire, tables, getattr(decoder, method)(wire)


class TestRecordRoundTrip(unittest.TestCase):
    """Records survive encode then decode, without their time offset"""

    def test_query_response(self):
        qr = make_query_response(timestamp=None)
        wire, tables, decoded = encode_and_decode(qr)
        self.assertEqual(decoded, qr)
        self.assertNotIn(QueryResponseKeys.TIME_OFFSET, wire)

    def test_names_and_rdata_share_one_table(self):
        qr = make_query_response(timestamp=None)
        _, tables, _ = encode_and_decode(qr)
        entries = list(tables.name_rdata)
        # the query name is also the bailiwick and the answer owner name
        self.assertEqual(entries.count(EXAMPLE_COM), 1)

    def test_sections_resolve_through_two_tables(self):
        qr = make_query_response(timestamp=None)
        wire, tables, decoded = encode_and_decode(qr)
        extended = wire[QueryResponseKeys.RESPONSE_EXTENDED]
        rr_list = tables.rrlist.resolve(extended[1])
        self.assertEqual(len(rr_list), 2)
        self.assertEqual(len(decoded.response_sections.answers), 2)
        self.assertEqual(decoded.response_sections.answers[1].rdata, b"\xc0\x00\x02\x02")

    def test_absent_fields_stay_absent(self):
        qr = QueryResponse(client_port=0, query_size=0)
        wire, _, decoded = encode_and_decode(qr)
        self.assertEqual(wire, {QueryResponseKeys.CLIENT_PORT: 0, QueryResponseKeys.QUERY_SIZE: 0})
        self.assertEqual(decoded.client_port, 0)
        self.assertEqual(decoded.query_size, 0)
        self.assertIsNone(decoded.transaction_id)
        self.assertIsNone(decoded.signature)
        self.assertIsNone(decoded.query_sections)

    def test_empty_section_rejected(self):
        tables = BlockTables()
        encoder = RecordEncoder(tables, BlockParameters())
        qr = make_query_response(response_sections=MessageSections(answers=()))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(qr)
        self.assertTrue(tables.is_empty)

        qr = make_query_response(timestamp=None, response_sections=MessageSections())
        _, _, decoded = encode_and_decode(qr)
        self.assertEqual(decoded, qr)

    def test_address_event_count(self):
        aec = make_address_event(ae_code=7)
        wire, _, decoded = encode_and_decode(aec)
        self.assertEqual(decoded, aec)
        self.assertEqual(wire[AddressEventCountKeys.AE_COUNT], 3)

    def test_malformed_message(self):
        mm = make_malformed_message(timestamp=None)
        _, _, decoded = encode_and_decode(mm)
        self.assertEqual(decoded, mm)

    def test_timestamp_from_earliest_time(self):
        parameters = BlockParameters(StorageParameters(ticks_per_second=1000))
        tables = BlockTables()
        decoder = RecordDecoder(tables, parameters, Timestamp(100, 999))
        decoded = decoder.decode_query_response({QueryResponseKeys.TIME_OFFSET: 2})
        self.assertEqual(decoded.timestamp, Timestamp(101, 1))

    def test_time_offset_without_earliest_time(self):
        decoder = RecordDecoder(BlockTables(), BlockParameters(), None)
        with self.assertRaises(CdnsFormatError):
            decoder.decode_query_response({QueryResponseKeys.TIME_OFFSET: 2})

    def test_unknown_enumeration_values_pass_through(self):
        qr = QueryResponse(signature=make_signature(qr_type=42))
        _, _, decoded = encode_and_decode(qr)
        self.assertEqual(decoded.signature.qr_type, 42)
        aec = make_address_event(ae_type=99)
        _, _, decoded = encode_and_decode(aec)
        self.assertEqual(decoded.ae_type, 99)

    def test_unknown_keys_preserved(self):
        qr = QueryResponse(client_port=1, extra={-1: "private", 40: [1, 2]})
        wire, _, decoded = encode_and_decode(qr)
        self.assertEqual(wire[-1], "private")
        self.assertEqual(decoded.extra, {-1: "private", 40: [1, 2]})

    def test_index_one_past_the_end(self):
        tables = BlockTables({"qr_sig": [{QueryResponseSignatureKeys.SERVER_PORT: 53}]})
        decoder = RecordDecoder(tables, BlockParameters(), None)
        decoder.decode_query_response({QueryResponseKeys.QR_SIGNATURE_INDEX: 0})
        with self.assertRaises(IndexOutOfRangeError):
            decoder.decode_query_response({QueryResponseKeys.QR_SIGNATURE_INDEX: 1})

    def test_mistyped_field(self):
        decoder = RecordDecoder(BlockTables(), BlockParameters(), None)
        with self.assertRaises(CdnsFormatError):
            decoder.decode_query_response({QueryResponseKeys.CLIENT_PORT: "53"})
        with self.assertRaises(CdnsFormatError):
            decoder.decode_query_response({QueryResponseKeys.CLIENT_PORT: 70000})
        with self.assertRaises(CdnsFormatError):
            decoder.decode_query_response([])


class TestStorageHints(unittest.TestCase):
    """NOT_COLLECTED versus absent"""

    def setUp(self):
        hints = StorageHints().without(
            "client_port", "query_opcode", "ttl", "response_processing_data",
            "query_question_sections", "query_answer_sections",
            "query_authority_sections", "query_additional_sections")
        self.parameters = BlockParameters(StorageParameters(storage_hints=hints))

    def test_not_collected_round_trip(self):
        qr = make_query_response(
            timestamp=None,
            client_port=NOT_COLLECTED,
            transaction_id=None,
            signature=make_signature(query_opcode=NOT_COLLECTED),
            response_processing=NOT_COLLECTED,
            query_sections=NOT_COLLECTED,
            response_sections=MessageSections(answers=(
                ResourceRecord(name=EXAMPLE_COM, classtype=ClassType(1), ttl=NOT_COLLECTED,
                               rdata=b"\x01\x02\x03\x04"),
            )),
        )
        _, _, decoded = encode_and_decode(qr, self.parameters)
        self.assertEqual(decoded, qr)
        self.assertIs(decoded.client_port, NOT_COLLECTED)
        self.assertIsNone(decoded.transaction_id)
        self.assertIs(decoded.signature.query_opcode, NOT_COLLECTED)
        self.assertIs(decoded.response_sections.answers[0].ttl, NOT_COLLECTED)
        self.assertIs(decoded.query_sections, NOT_COLLECTED)

    def test_missing_field_decodes_by_hint(self):
        decoder = RecordDecoder(BlockTables(), self.parameters, None)
        decoded = decoder.decode_query_response({})
        self.assertIs(decoded.client_port, NOT_COLLECTED)
        self.assertIsNone(decoded.client_address)
        self.assertIs(decoded.response_processing, NOT_COLLECTED)
        self.assertIs(decoded.query_sections, NOT_COLLECTED)
        self.assertIsNone(decoded.response_sections)

    def test_present_value_under_unset_hint_rejected(self):
        encoder = RecordEncoder(BlockTables(), self.parameters)
        with self.assertRaises(PolicyViolationError) as context:
            encoder.check_query_response(QueryResponse(client_port=53))
        self.assertEqual(context.exception.field, "client_port")

    def test_not_collected_under_set_hint_rejected(self):
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        with self.assertRaises(PolicyViolationError) as context:
            encoder.check_query_response(QueryResponse(transaction_id=NOT_COLLECTED))
        self.assertEqual(context.exception.field, "transaction_id")

    def test_none_under_unset_hint_rejected(self):
        hints = StorageHints().without("transaction_id")
        parameters = BlockParameters(StorageParameters(storage_hints=hints))
        encoder = RecordEncoder(BlockTables(), parameters)
        with self.assertRaises(PolicyViolationError) as context:
            encoder.check_query_response(make_query_response(transaction_id=None))
        self.assertEqual(context.exception.field, "transaction_id")

        qr = make_query_response(timestamp=None, transaction_id=NOT_COLLECTED)
        _, _, decoded = encode_and_decode(qr, parameters)
        self.assertEqual(decoded, qr)

    def test_absent_sections_under_unset_hints_rejected(self):
        encoder = RecordEncoder(BlockTables(), self.parameters)
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(
                client_port=NOT_COLLECTED, response_processing=NOT_COLLECTED))
        encoder.check_query_response(QueryResponse(
            client_port=NOT_COLLECTED, response_processing=NOT_COLLECTED,
            query_sections=NOT_COLLECTED))

    def test_other_data_hints(self):
        parameters = BlockParameters(StorageParameters(
            storage_hints=StorageHints().without("address_event_counts")))
        encoder = RecordEncoder(BlockTables(), parameters)
        with self.assertRaises(PolicyViolationError):
            encoder.check_address_event_count(make_address_event())
        encoder.check_malformed_message(make_malformed_message())


class TestPolicy(unittest.TestCase):
    """Write-path validation against StorageParameters"""

    def test_opcode_outside_declared_set(self):
        parameters = BlockParameters(StorageParameters(opcodes=(0,)))
        tables = BlockTables()
        encoder = RecordEncoder(tables, parameters)
        encoder.check_query_response(make_query_response(opcode=0))
        with self.assertRaises(PolicyViolationError) as context:
            encoder.check_query_response(make_query_response(opcode=5))
        self.assertEqual(context.exception.field, "opcode")
        self.assertTrue(tables.is_empty)

    def test_rr_type_outside_declared_set(self):
        parameters = BlockParameters(StorageParameters(rr_types=(1,)))
        encoder = RecordEncoder(BlockTables(), parameters)
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(make_query_response())

    def test_ticks_out_of_range(self):
        parameters = BlockParameters(StorageParameters(ticks_per_second=1000))
        encoder = RecordEncoder(BlockTables(), parameters)
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(timestamp=Timestamp(1, 1000)))

    def test_negative_seconds_rejected(self):
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(timestamp=Timestamp(-5, 0)))
        with self.assertRaises(PolicyViolationError):
            encoder.check_malformed_message(make_malformed_message(timestamp=Timestamp(-1, 0)))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(timestamp=Timestamp(1.5, 0)))

    def test_value_out_of_range(self):
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(client_port=65536))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(client_port=-1))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(client_address="192.0.2.1"))

    def test_unknown_flag_rejected(self):
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        signature = make_signature(qr_dns_flags=FlagSet.of("query_rd", "bogus"))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(signature=signature))

    def test_address_family_must_match_transport(self):
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        signature = make_signature(transport_flags=TransportFlags(ipv6=True))
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(signature=signature))


class TestTransportFlagFields(unittest.TestCase):
    """Trailing data is a Q/R signature flag only"""

    def test_trailing_data_in_signature(self):
        flags = TransportFlags(transport=Transport.TCP, trailing_data=True)
        qr = QueryResponse(signature=make_signature(transport_flags=flags))
        wire, tables, decoded = encode_and_decode(qr)
        sig = tables.qr_sig.resolve(wire[QueryResponseKeys.QR_SIGNATURE_INDEX])
        self.assertEqual(sig[QueryResponseSignatureKeys.QR_TRANSPORT_FLAGS], 0b100010)
        self.assertEqual(decoded.signature.transport_flags, flags)

    def test_trailing_data_rejected_elsewhere(self):
        flags = TransportFlags(transport=Transport.TCP, trailing_data=True)
        encoder = RecordEncoder(BlockTables(), BlockParameters())
        with self.assertRaises(PolicyViolationError):
            encoder.check_address_event_count(make_address_event(transport_flags=flags))
        data = replace(make_malformed_message().message_data, transport_flags=flags)
        with self.assertRaises(PolicyViolationError):
            encoder.check_malformed_message(make_malformed_message(message_data=data))

    def test_bit_five_outside_signature_is_unknown(self):
        tables = BlockTables({"ip_address": [b"\xc0\x00\x02\x09"]})
        parameters = BlockParameters()
        decoded = RecordDecoder(tables, parameters, None).decode_address_event_count({
            AddressEventCountKeys.AE_TYPE: 1,
            AddressEventCountKeys.AE_ADDRESS_INDEX: 0,
            AddressEventCountKeys.AE_TRANSPORT_FLAGS: 0b100010,
            AddressEventCountKeys.AE_COUNT: 1,
        })
        self.assertEqual(decoded.transport_flags,
                         TransportFlags(transport=Transport.TCP, unknown_bits=0b100000))
        self.assertFalse(decoded.transport_flags.trailing_data)

        encoder = RecordEncoder(BlockTables(), parameters)
        encoder.check_address_event_count(decoded)
        wire = encoder.encode_address_event_count(decoded)
        self.assertEqual(wire[AddressEventCountKeys.AE_TRANSPORT_FLAGS], 0b100010)


class TestAddresses(unittest.TestCase):
    """Address storage and prefix truncation"""

    def test_prefix_truncation(self):
        parameters = BlockParameters(StorageParameters(
            client_address_prefix_ipv4=24, client_address_prefix_ipv6=36))
        qr = QueryResponse(client_address=IPv4Address("192.0.2.77"))
        _, tables, decoded = encode_and_decode(qr, parameters)
        self.assertEqual(tables.ip_address.resolve(0), b"\xc0\x00\x02")
        self.assertEqual(decoded.client_address, IPv4Address("192.0.2.0"))

        qr = QueryResponse(client_address=IPv6Address("2001:db8:abcd::1"))
        _, tables, decoded = encode_and_decode(qr, parameters)
        self.assertEqual(tables.ip_address.resolve(0), b"\x20\x01\x0d\xb8\xa0")
        self.assertEqual(decoded.client_address, IPv6Address("2001:db8:a000::"))

    def test_server_prefix_is_separate(self):
        parameters = BlockParameters(StorageParameters(client_address_prefix_ipv4=8))
        qr = QueryResponse(client_address=IPv4Address("192.0.2.1"), signature=make_signature())
        _, _, decoded = encode_and_decode(qr, parameters)
        self.assertEqual(decoded.client_address, IPv4Address("192.0.0.0"))
        self.assertEqual(decoded.signature.server_address, IPv4Address("198.51.100.53"))

    def test_short_ipv6_prefix_needs_transport_flags(self):
        parameters = BlockParameters(StorageParameters(client_address_prefix_ipv6=32))
        encoder = RecordEncoder(BlockTables(), parameters)
        with self.assertRaises(PolicyViolationError):
            encoder.check_query_response(QueryResponse(client_address=IPv6Address("2001:db8::1")))

        signature = make_signature(server_address=IPv6Address("2001:db8::53"),
                                   transport_flags=TransportFlags(ipv6=True))
        qr = QueryResponse(client_address=IPv6Address("2001:db8::1"), signature=signature)
        _, _, decoded = encode_and_decode(qr, parameters)
        self.assertEqual(decoded.client_address, IPv6Address("2001:db8::"))

    def test_family_from_length(self):
        self.assertEqual(decode_address(b"\x0a", None, "test"), IPv4Address("10.0.0.0"))
        self.assertEqual(decode_address(b"\x20\x01\x0d\xb8\x00", None, "test"),
                         IPv6Address("2001:db8::"))
        self.assertEqual(decode_address(b"\x20\x01", True, "test"), IPv6Address("2001::"))
        with self.assertRaises(CdnsFormatError):
            decode_address(b"\x00" * 5, False, "test")
        with self.assertRaises(CdnsFormatError):
            decode_address(b"", None, "test")


if __name__ == "__main__":
    unittest.main()
