"""
Record factories shared by the C-DNS tests
"""

import io
from ipaddress import IPv4Address, IPv6Address

from models.flags import FlagSet
from models.records import (
    AddressEventCount,
    AddressEventType,
    ClassType,
    MalformedMessage,
    MalformedMessageData,
    MessageSections,
    Question,
    QueryResponse,
    QueryResponseType,
    QuerySignature,
    ResourceRecord,
    ResponseProcessingData,
    Timestamp,
    Transport,
    TransportFlags,
)
from cdns_codec.writer import CdnsWriter

EXAMPLE_COM = b"\x07example\x03com\x00"
BASE_SECONDS = 1_600_000_000


def make_signature(opcode=0, transport_flags=None, server="198.51.100.53", **overrides):
    fields = dict(
        server_address=IPv4Address(server),
        server_port=53,
        transport_flags=transport_flags or TransportFlags(transport=Transport.UDP),
        qr_type=QueryResponseType.STUB,
        qr_sig_flags=FlagSet.of("has_query", "has_response", "query_has_opt"),
        query_opcode=opcode,
        qr_dns_flags=FlagSet.of("query_rd", "response_rd", "response_ra"),
        query_rcode=0,
        query_classtype=ClassType(rr_type=1, rr_class=1),
        query_qdcount=1,
        query_ancount=0,
        query_nscount=0,
        query_arcount=1,
        query_edns_version=0,
        query_udp_size=4096,
        query_opt_rdata=b"",
        response_rcode=0,
    )
    fields.update(overrides)
    return QuerySignature(**fields)


def make_query_response(ticks=0, opcode=0, client="192.0.2.1", name=EXAMPLE_COM, **overrides):
    """A fully populated Q/R item; every optional field is present."""
    fields = dict(
        timestamp=Timestamp(BASE_SECONDS, ticks),
        client_address=IPv4Address(client),
        client_port=53000,
        transaction_id=0x1234,
        signature=make_signature(opcode=opcode),
        client_hoplimit=64,
        response_delay=1500,
        query_name=name,
        query_size=40,
        response_size=56,
        response_processing=ResponseProcessingData(
            bailiwick=name, processing_flags=FlagSet.of("from_cache")),
        query_sections=MessageSections(
            questions=(Question(name=b"\x03www" + name, classtype=ClassType(28)),),
            additional=(ResourceRecord(name=b"\x00", classtype=ClassType(41, 4096),
                                       ttl=0, rdata=b""),),
        ),
        response_sections=MessageSections(
            answers=(
                ResourceRecord(name=name, classtype=ClassType(1), ttl=300,
                               rdata=b"\xc0\x00\x02\x01"),
                ResourceRecord(name=name, classtype=ClassType(1), ttl=300,
                               rdata=b"\xc0\x00\x02\x02"),
            ),
            authority=(ResourceRecord(name=name, classtype=ClassType(2), ttl=3600,
                                      rdata=b"\x02ns" + name),),
        ),
    )
    fields.update(overrides)
    return QueryResponse(**fields)


def make_address_event(address="192.0.2.9", count=3, **overrides):
    fields = dict(
        ae_type=AddressEventType.TCP_RESET,
        address=IPv4Address(address),
        count=count,
        transport_flags=TransportFlags(transport=Transport.TCP),
    )
    fields.update(overrides)
    return AddressEventCount(**fields)


def make_malformed_message(ticks=0, **overrides):
    fields = dict(
        timestamp=Timestamp(BASE_SECONDS, ticks),
        client_address=IPv6Address("2001:db8::1"),
        client_port=40000,
        message_data=MalformedMessageData(
            server_address=IPv6Address("2001:db8::53"),
            server_port=53,
            transport_flags=TransportFlags(ipv6=True, transport=Transport.UDP),
            payload=b"\x12\x34\x01",
        ),
    )
    fields.update(overrides)
    return MalformedMessage(**fields)


def write_records(records, block_parameters=None, **writer_args):
    """Write records with a streaming writer and return the file bytes."""
    buffer = io.BytesIO()
    with CdnsWriter(buffer, block_parameters=block_parameters, **writer_args) as writer:
        for record in records:
            writer.add_record(record)
    return buffer.getvalue()
