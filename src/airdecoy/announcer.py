"""Unsolicited traffic: probes, announcements and goodbyes.

Brief:
  Builders here are pure; the Responder decides when they are sent. Probes ask
  for the names we intend to own and carry our proposed records in the
  Authority section (RFC 6762 section 8.1). Announcements carry the whole
  owned record set. Goodbyes carry exactly the same records with TTL 0.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

import dns.rdatatype

from .dns_message import MdnsMessage, Question, ResourceRecord, make_query, make_response
from .records import RecordSet

logger = logging.getLogger(__name__)


def probe_message(records: RecordSet, *, first: bool = False) -> MdnsMessage:
    """
    Brief: Build a probe query for every unique owned name.

    Inputs:
    - records: proposed RecordSet
    - first: set the QU bit (only the first probe asks for unicast replies)

    Outputs:
    - MdnsMessage with ANY questions and the proposed unique records in the
      Authority section
    """
    questions = [
        Question(name=name, rdtype=dns.rdatatype.ANY, unicast=first)
        for name in records.unique_names
    ]
    # Authority records never carry the cache-flush bit.
    authorities = [rr.without_cache_flush() for rr in records.unique()]
    return make_query(questions, authorities=authorities)


def announcement_message(records: RecordSet) -> MdnsMessage:
    """Unsolicited response carrying every owned record."""

    return make_response(records.all())


def goodbye_message(records: RecordSet) -> MdnsMessage:
    """The announcement with every TTL set to zero."""

    return make_response(records.with_ttl(0))


def emit_goodbyes(
    send: Callable[[MdnsMessage], int],
    records: RecordSet,
    *,
    count: int = 2,
    interval: float = 0.25,
    stop_wait: Optional[threading.Event] = None,
) -> int:
    """
    Brief: Send `count` goodbye messages `interval` seconds apart.

    Inputs:
    - send: callback multicasting a message, returning the number of sockets used
    - records: the RecordSet being withdrawn
    - count: number of goodbye messages (at least one)
    - interval: delay between messages in seconds
    - stop_wait: event whose wait() provides the delay; setting it skips the
      remaining delays

    Outputs:
    - int: total number of datagrams sent
    """
    msg = goodbye_message(records)
    waiter = stop_wait or threading.Event()
    sent = 0
    for i in range(max(1, int(count))):
        if i:
            waiter.wait(interval)
        try:
            sent += send(msg)
        except Exception as exc:
            logger.warning("Goodbye %d/%d failed: %s", i + 1, count, exc)
    logger.info("Sent %d goodbye datagram(s) for %s", sent, records.srv.name)
    return sent


def conflicting_records(
    records: RecordSet, incoming: List[ResourceRecord]
) -> List[ResourceRecord]:
    """Incoming records claiming one of our unique names with different data."""

    ours = {rr.key for rr in records.unique()}
    names = records.unique_names
    out: List[ResourceRecord] = []
    for rr in incoming:
        if rr.name not in names:
            continue
        if rr.rdtype not in {r.rdtype for r in records.unique() if r.name == rr.name}:
            continue
        if rr.key in ours:
            continue
        out.append(rr)
    return out
