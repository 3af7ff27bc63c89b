"""DNS message codec with the multicast DNS class-bit extensions.

Brief:
  mDNS reuses the top bit of the 16-bit class field: in questions it is the
  unicast-response (QU) bit, in resource records it is the cache-flush bit.
  dnspython has no notion of either, so this module walks the wire format with
  dns.wire.Parser, masks those bits off before handing RDATA to dnspython, and
  puts them back when rendering.

Inputs:
  - Raw datagrams received on port 5353.

Outputs:
  - MdnsMessage instances, and wire bytes for outgoing messages.
"""

from __future__ import annotations

import dataclasses
import struct
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import dns.exception
import dns.flags
import dns.name
import dns.rdata
import dns.rdataclass
import dns.rdataset
import dns.rdatatype
import dns.renderer
import dns.wire

from .errors import MalformedPacket, OversizedRecord

# RFC 6762 section 17: an mDNS message may not exceed 9000 octets.
MAX_MESSAGE_SIZE = 9000

CLASS_MASK = 0x7FFF
TOP_BIT = 0x8000

RESPONSE_FLAGS = dns.flags.QR | dns.flags.AA


@dataclass(frozen=True)
class Question:
    """Brief: One entry of the question section.

    Inputs:
      - name: absolute dns.name.Name.
      - rdtype: numeric record type (ANY allowed).
      - rdclass: class with the QU bit masked off.
      - unicast: True when the QU bit was set.
    """

    name: dns.name.Name
    rdtype: int
    rdclass: int = dns.rdataclass.IN
    unicast: bool = False

    def __str__(self) -> str:
        return "%s %s%s" % (
            self.name,
            dns.rdatatype.to_text(self.rdtype),
            " QU" if self.unicast else "",
        )


@dataclass(frozen=True)
class ResourceRecord:
    """Brief: One resource record, with the cache-flush bit split out.

    Inputs:
      - name: owner name.
      - rdtype: numeric record type.
      - rdclass: class with the cache-flush bit masked off.
      - ttl: time to live in seconds.
      - rdata: dnspython Rdata instance.
      - cache_flush: True when the cache-flush bit is (or should be) set.

    Outputs:
      - ResourceRecord instance. `key` ignores TTL and the cache-flush bit so
        that known answers and goodbyes compare equal to the owned records.
    """

    name: dns.name.Name
    rdtype: int
    rdclass: int
    ttl: int
    rdata: dns.rdata.Rdata
    cache_flush: bool = False

    @property
    def key(self) -> Tuple[dns.name.Name, int, int, dns.rdata.Rdata]:
        return (self.name, self.rdtype, self.rdclass, self.rdata)

    def with_ttl(self, ttl: int) -> "ResourceRecord":
        return dataclasses.replace(self, ttl=int(ttl))

    def without_cache_flush(self) -> "ResourceRecord":
        return dataclasses.replace(self, cache_flush=False)

    def __str__(self) -> str:
        return "%s %d %s %s" % (
            self.name,
            self.ttl,
            dns.rdatatype.to_text(self.rdtype),
            self.rdata.to_text(),
        )


@dataclass
class MdnsMessage:
    """Brief: Decoded (or to-be-encoded) DNS message.

    Inputs:
      - id: message id (0 for multicast traffic, echoed for legacy unicast).
      - flags: raw header flags word.
      - questions / answers / authorities / additionals: section contents.
    """

    id: int = 0
    flags: int = 0
    questions: List[Question] = field(default_factory=list)
    answers: List[ResourceRecord] = field(default_factory=list)
    authorities: List[ResourceRecord] = field(default_factory=list)
    additionals: List[ResourceRecord] = field(default_factory=list)

    @property
    def is_response(self) -> bool:
        return bool(self.flags & dns.flags.QR)

    @property
    def truncated(self) -> bool:
        return bool(self.flags & dns.flags.TC)

    @property
    def opcode(self) -> int:
        return (self.flags >> 11) & 0xF

    def records(self) -> List[ResourceRecord]:
        """Return answers, authorities and additionals in wire order."""

        return list(self.answers) + list(self.authorities) + list(self.additionals)


def _read_records(parser: dns.wire.Parser, count: int) -> List[ResourceRecord]:
    records: List[ResourceRecord] = []
    for _ in range(count):
        name = parser.get_name()
        rdtype, raw_class, ttl, rdlen = parser.get_struct("!HHIH")
        if rdtype == dns.rdatatype.OPT:
            # EDNS pseudo-record: the class field is a payload size.
            parser.get_bytes(rdlen)
            continue
        rdclass = raw_class & CLASS_MASK
        with parser.restrict_to(rdlen):
            rdata = dns.rdata.from_wire_parser(rdclass, rdtype, parser)
        records.append(
            ResourceRecord(
                name=name,
                rdtype=rdtype,
                rdclass=rdclass,
                ttl=ttl,
                rdata=rdata,
                cache_flush=bool(raw_class & TOP_BIT),
            )
        )
    return records


def decode_message(wire: bytes) -> MdnsMessage:
    """
    Brief: Parse wire-format bytes into an MdnsMessage.

    Inputs:
    - wire: datagram payload

    Outputs:
    - MdnsMessage

    Raises:
    - MalformedPacket: for truncated, inconsistent or otherwise undecodable
      input. The underlying dnspython error is chained.
    """
    try:
        parser = dns.wire.Parser(bytes(wire))
        msg_id, flags, qdcount, ancount, nscount, arcount = parser.get_struct(
            "!HHHHHH"
        )
        questions: List[Question] = []
        for _ in range(qdcount):
            name = parser.get_name()
            rdtype, raw_class = parser.get_struct("!HH")
            questions.append(
                Question(
                    name=name,
                    rdtype=rdtype,
                    rdclass=raw_class & CLASS_MASK,
                    unicast=bool(raw_class & TOP_BIT),
                )
            )
        answers = _read_records(parser, ancount)
        authorities = _read_records(parser, nscount)
        additionals = _read_records(parser, arcount)
    except (dns.exception.DNSException, struct.error, ValueError) as exc:
        raise MalformedPacket("undecodable DNS message: %s" % (exc,)) from exc
    return MdnsMessage(
        id=msg_id,
        flags=flags,
        questions=questions,
        answers=answers,
        authorities=authorities,
        additionals=additionals,
    )


def _add_records(
    renderer: dns.renderer.Renderer,
    section: int,
    records: Sequence[ResourceRecord],
) -> None:
    for rr in records:
        rdataset = dns.rdataset.from_rdata(int(rr.ttl), rr.rdata)
        rdclass = rr.rdclass | (TOP_BIT if rr.cache_flush else 0)
        renderer.add_rdataset(section, rr.name, rdataset, override_rdclass=rdclass)


def encode_message(msg: MdnsMessage, max_size: int = MAX_MESSAGE_SIZE) -> bytes:
    """
    Brief: Render an MdnsMessage to wire format with name compression.

    Inputs:
    - msg: message to render
    - max_size: upper bound on the rendered size in octets

    Outputs:
    - bytes

    Raises:
    - OversizedRecord: the message does not fit in max_size octets.
    """
    renderer = dns.renderer.Renderer(id=msg.id, flags=msg.flags, max_size=max_size)
    try:
        for q in msg.questions:
            rdclass = q.rdclass | (TOP_BIT if q.unicast else 0)
            renderer.add_question(q.name, q.rdtype, rdclass)
        _add_records(renderer, dns.renderer.ANSWER, msg.answers)
        _add_records(renderer, dns.renderer.AUTHORITY, msg.authorities)
        _add_records(renderer, dns.renderer.ADDITIONAL, msg.additionals)
    except dns.exception.TooBig as exc:
        raise OversizedRecord(
            "DNS message exceeds %d octets" % (max_size,)
        ) from exc
    renderer.write_header()
    return renderer.get_wire()


def make_response(
    answers: Sequence[ResourceRecord],
    additionals: Sequence[ResourceRecord] = (),
    *,
    msg_id: int = 0,
    questions: Sequence[Question] = (),
) -> MdnsMessage:
    """Build an authoritative response message."""

    return MdnsMessage(
        id=msg_id,
        flags=RESPONSE_FLAGS,
        questions=list(questions),
        answers=list(answers),
        additionals=list(additionals),
    )


def make_query(
    questions: Sequence[Question],
    *,
    known_answers: Sequence[ResourceRecord] = (),
    authorities: Sequence[ResourceRecord] = (),
    msg_id: int = 0,
) -> MdnsMessage:
    """Build a query message (used for probes and by tests)."""

    return MdnsMessage(
        id=msg_id,
        flags=0,
        questions=list(questions),
        answers=list(known_answers),
        authorities=list(authorities),
    )
