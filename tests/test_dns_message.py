"""
Brief: Tests for airdecoy.dns_message: mDNS class bits, section handling and
size limits.

Inputs:
  - None

Outputs:
  - None
"""

import struct

import dns.flags
import dns.message
import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.PTR
import dns.rdtypes.IN.A
import pytest

from airdecoy.dns_message import (
    MAX_MESSAGE_SIZE,
    Question,
    ResourceRecord,
    decode_message,
    encode_message,
    make_query,
    make_response,
)
from airdecoy.errors import MalformedPacket, OversizedRecord

IN = dns.rdataclass.IN
SERVICE = dns.name.from_text("_airplay._tcp.local.")
INSTANCE = dns.name.from_text("Test-AirPlay._airplay._tcp.local.")
HOST = dns.name.from_text("box.local.")


def _a_record(cache_flush=True, ttl=75):
    return ResourceRecord(
        name=HOST,
        rdtype=dns.rdatatype.A,
        rdclass=IN,
        ttl=ttl,
        rdata=dns.rdtypes.IN.A.A(IN, dns.rdatatype.A, "192.0.2.10"),
        cache_flush=cache_flush,
    )


def _ptr_record():
    return ResourceRecord(
        name=SERVICE,
        rdtype=dns.rdatatype.PTR,
        rdclass=IN,
        ttl=120,
        rdata=dns.rdtypes.ANY.PTR.PTR(IN, dns.rdatatype.PTR, INSTANCE),
    )


def test_qu_bit_is_split_from_question_class():
    """
    Brief: The top bit of QCLASS decodes as `unicast`, leaving class IN.

    Inputs:
      - None

    Outputs:
      - None: Asserts QU flag and masked class
    """
    q = dns.message.make_query("_airplay._tcp.local.", "PTR", use_edns=False)
    wire = bytearray(q.to_wire())
    # Last four octets of the question are QTYPE/QCLASS.
    struct.pack_into("!H", wire, len(wire) - 2, 0x8001)

    msg = decode_message(bytes(wire))
    assert len(msg.questions) == 1
    question = msg.questions[0]
    assert question.unicast is True
    assert question.rdclass == IN
    assert question.rdtype == dns.rdatatype.PTR
    assert question.name == SERVICE


def test_cache_flush_bit_round_trips():
    """
    Brief: Cache-flush survives encode/decode and is stripped from the class.

    Inputs:
      - None

    Outputs:
      - None: Asserts flags, classes and TTLs
    """
    wire = encode_message(make_response([_a_record()], [_ptr_record()]))
    msg = decode_message(wire)

    assert msg.is_response
    assert msg.flags & dns.flags.AA
    assert msg.answers[0].cache_flush is True
    assert msg.answers[0].rdclass == IN
    assert msg.answers[0].ttl == 75
    assert msg.additionals[0].cache_flush is False
    assert msg.additionals[0].key == _ptr_record().key


def test_encoded_message_is_parseable_by_dnspython():
    """
    Brief: Our wire output (without class bits) is a normal DNS message.

    Inputs:
      - None

    Outputs:
      - None: Asserts dnspython reads the same answer
    """
    wire = encode_message(make_response([_a_record(cache_flush=False)], msg_id=7))
    parsed = dns.message.from_wire(wire)
    assert parsed.id == 7
    assert parsed.answer[0].name == HOST
    assert parsed.answer[0][0].address == "192.0.2.10"


def test_query_sections_are_preserved():
    """
    Brief: Known answers and authority records decode into their sections.

    Inputs:
      - None

    Outputs:
      - None: Asserts section contents
    """
    query = make_query(
        [Question(SERVICE, dns.rdatatype.PTR)],
        known_answers=[_ptr_record()],
        authorities=[_a_record(cache_flush=False)],
    )
    msg = decode_message(encode_message(query))
    assert not msg.is_response
    assert [rr.key for rr in msg.answers] == [_ptr_record().key]
    assert [rr.key for rr in msg.authorities] == [_a_record().key]
    assert msg.records()[0].key == _ptr_record().key


@pytest.mark.parametrize(
    "wire",
    [
        b"",
        b"\x00\x01\x02",
        # Header claims one question but none follows.
        b"\x00\x00\x00\x00\x00\x01\x00\x00\x00\x00\x00\x00",
        # Question name with a label running past the end.
        b"\x00\x00\x00\x00\x00\x01\x00\x00\x00\x00\x00\x00\x3fabc",
    ],
)
def test_malformed_input_raises_malformed_packet(wire):
    """
    Brief: Truncated or inconsistent input raises MalformedPacket.

    Inputs:
      - wire: broken datagram

    Outputs:
      - None: Asserts MalformedPacket
    """
    with pytest.raises(MalformedPacket):
        decode_message(wire)


def test_oversized_message_raises():
    """
    Brief: Messages above the mDNS 9000-octet ceiling are refused.

    Inputs:
      - None

    Outputs:
      - None: Asserts OversizedRecord
    """
    records = []
    for i in range(700):
        records.append(
            ResourceRecord(
                name=dns.name.from_text("host%d.local." % i),
                rdtype=dns.rdatatype.A,
                rdclass=IN,
                ttl=75,
                rdata=dns.rdtypes.IN.A.A(IN, dns.rdatatype.A, "192.0.2.1"),
            )
        )
    with pytest.raises(OversizedRecord):
        encode_message(make_response(records))
    assert MAX_MESSAGE_SIZE == 9000
