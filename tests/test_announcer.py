"""
Brief: Tests for airdecoy.announcer message builders and goodbye emission.

Inputs:
  - None

Outputs:
  - None
"""

import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.IN.A

from airdecoy.announcer import (
    announcement_message,
    conflicting_records,
    emit_goodbyes,
    goodbye_message,
    probe_message,
)
from airdecoy.dns_message import ResourceRecord
from airdecoy.records import build_records

IN = dns.rdataclass.IN


def test_goodbye_and_announcement_cover_identical_tuples(instance):
    """
    Brief: Goodbyes differ from the announcement only in TTL.

    Inputs:
      - instance: ServiceInstance fixture

    Outputs:
      - None
    """
    rs = build_records(instance)
    hello = announcement_message(rs)
    bye = goodbye_message(rs)
    assert [rr.key for rr in hello.answers] == [rr.key for rr in bye.answers]
    assert all(rr.ttl > 0 for rr in hello.answers)
    assert all(rr.ttl == 0 for rr in bye.answers)
    assert [rr.cache_flush for rr in hello.answers] == [rr.cache_flush for rr in bye.answers]


def test_probe_message_shape(instance):
    """
    Brief: Probes ask ANY for each unique name and carry proposals in Authority.

    Inputs:
      - instance: ServiceInstance fixture

    Outputs:
      - None
    """
    rs = build_records(instance)
    first = probe_message(rs, first=True)
    later = probe_message(rs)
    assert not first.is_response
    assert [q.name for q in first.questions] == rs.unique_names
    assert all(q.unicast for q in first.questions)
    assert not any(q.unicast for q in later.questions)
    assert len(first.authorities) == len(rs.unique())
    assert first.answers == []


def test_emit_goodbyes_counts_and_survives_send_errors(instance):
    """
    Brief: Each goodbye is attempted even if one send raises.

    Inputs:
      - instance: ServiceInstance fixture

    Outputs:
      - None
    """
    rs = build_records(instance)
    calls = []

    def send(msg):
        calls.append(msg)
        if len(calls) == 1:
            raise OSError("Network is down")
        return 2

    assert emit_goodbyes(send, rs, count=3, interval=0.0) == 4
    assert len(calls) == 3
    assert emit_goodbyes(lambda m: 1, rs, count=0, interval=0.0) == 1


def test_conflicting_records_ignores_shared_and_identical(instance):
    """
    Brief: Only different data for our unique names and types counts.

    Inputs:
      - instance: ServiceInstance fixture

    Outputs:
      - None
    """
    rs = build_records(instance)
    host = rs.addresses[0].name

    def a(address, name=host):
        return ResourceRecord(
            name=name,
            rdtype=dns.rdatatype.A,
            rdclass=IN,
            ttl=75,
            rdata=dns.rdtypes.IN.A.A(IN, dns.rdatatype.A, address),
        )

    other_ptr = rs.ptr  # shared record: never a conflict
    assert conflicting_records(rs, [other_ptr, rs.srv, rs.addresses[0]]) == []
    assert conflicting_records(rs, [a("192.0.2.10")]) == []
    clash = a("192.0.2.99")
    assert conflicting_records(rs, [clash]) == [clash]
    assert conflicting_records(rs, [a("192.0.2.99", dns.name.from_text("elsewhere.local."))]) == []
