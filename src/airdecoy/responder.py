"""mDNS responder: probing, announcing, answering queries, and goodbyes.

Brief:
  A single worker thread drains one bounded queue holding inbound datagrams,
  timer events and stop/fatal notifications. Only that thread touches the
  state, the owned RecordSet and the rate-limit caches, so none of them need a
  lock. Timers never act directly; they enqueue an event.

Inputs:
  - ServiceInstance to advertise and a MulticastTransport-like object exposing
    send_multicast(), send_to() and active_links.

Outputs:
  - Responder with start(), submit(), stop() and the ready/finished events.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import dns.name
import dns.rdataclass
import dns.rdatatype
from cachetools import TTLCache  # type: ignore[import]

from .announcer import (
    announcement_message,
    conflicting_records,
    emit_goodbyes,
    probe_message,
)
from .dns_message import (
    MdnsMessage,
    Question,
    ResourceRecord,
    decode_message,
    encode_message,
    make_response,
)
from .errors import (
    AlreadyShutDown,
    BeaconError,
    MalformedPacket,
    OversizedRecord,
    ProbeFailed,
)
from .records import RecordSet, ServiceInstance, build_records
from .timers import TimerScheduler
from .transport import Provenance

logger = logging.getLogger(__name__)

# RFC 6762 section 6.7: answers to legacy unicast queries carry short TTLs.
LEGACY_UNICAST_TTL = 10


class ResponderState(enum.Enum):
    INITIAL = "initial"
    PROBING = "probing"
    ANNOUNCING = "announcing"
    RESPONDING = "responding"
    SHUTTING_DOWN = "shutting_down"


@dataclass(frozen=True)
class _Datagram:
    data: bytes
    provenance: Provenance


@dataclass(frozen=True)
class _Timer:
    kind: str  # "probe" | "announce"
    generation: int
    count: int


@dataclass(frozen=True)
class _Fatal:
    error: BeaconError


_STOP = object()


def _tiebreak_key(rr: ResourceRecord) -> Tuple[int, int, bytes]:
    return (rr.rdclass, rr.rdtype, rr.rdata.to_wire())


def lost_tiebreak(ours: List[ResourceRecord], theirs: List[ResourceRecord]) -> bool:
    """
    Brief: Simultaneous probe tie-break (RFC 6762 section 8.2).

    Inputs:
    - ours: our proposed records for one name
    - theirs: the other prober's Authority records for the same name

    Outputs:
    - bool: True when their data sorts lexicographically later (we lose).
      Identical data (our own probe seen again) never loses.
    """
    a = sorted(_tiebreak_key(rr) for rr in ours)
    b = sorted(_tiebreak_key(rr) for rr in theirs)
    if a == b:
        return False
    return b > a


class Responder:
    """
    Brief: Reactive mDNS state machine for one ServiceInstance.

    Inputs:
    - instance: the ServiceInstance to advertise
    - transport: sends datagrams (send_multicast / send_to / active_links)
    - probe: run the probing phase before announcing
    - probe_interval: seconds between probes (also the settle time after the last)
    - probe_count: probes per round
    - probe_attempts: probing rounds before giving up with ProbeFailed
    - announce_count / announce_interval: initial announcements; each further
      announcement doubles the delay
    - goodbye_count / goodbye_interval: goodbye messages at shutdown
    - rate_limit_window: identical multicast responses within this many seconds
      are suppressed; also the "recently multicast" window for QU queries
    - queue_size: bound of the work queue
    - scheduler: TimerScheduler-like object (call_later / cancel_all)
    - clock: monotonic clock used by the rate-limit caches

    Outputs:
    - Responder. `ready` is set once Responding; `finished` once the worker
      thread exits; `error` holds a fatal error, if any.
    """

    def __init__(
        self,
        instance: ServiceInstance,
        transport: Any,
        *,
        probe: bool = True,
        probe_interval: float = 0.25,
        probe_count: int = 3,
        probe_attempts: int = 10,
        announce_count: int = 2,
        announce_interval: float = 1.0,
        goodbye_count: int = 2,
        goodbye_interval: float = 0.25,
        rate_limit_window: float = 1.0,
        queue_size: int = 256,
        scheduler: Optional[TimerScheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.25,
    ) -> None:
        self._base = instance
        self._instance = instance
        self._records = build_records(instance)
        self.transport = transport

        self.probe = bool(probe)
        self.probe_interval = float(probe_interval)
        self.probe_count = max(1, int(probe_count))
        self.probe_attempts = max(1, int(probe_attempts))
        self.announce_count = max(1, int(announce_count))
        self.announce_interval = float(announce_interval)
        self.goodbye_count = max(1, int(goodbye_count))
        self.goodbye_interval = float(goodbye_interval)
        self.poll_interval = float(poll_interval)

        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(queue_size)))
        self._scheduler = scheduler or TimerScheduler()
        self._clock = clock

        window = max(0.001, float(rate_limit_window))
        self._recent_multicast: TTLCache = TTLCache(maxsize=1024, ttl=window, timer=clock)
        self._recent_responses: TTLCache = TTLCache(maxsize=256, ttl=window, timer=clock)

        self._state = ResponderState.INITIAL
        self._generation = 0
        self._attempt = 1
        self._rename_instance = False
        self._rename_host = False
        self._warned_conflicts: Set[Tuple] = set()

        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_requested = threading.Event()
        self._pending_fatal: Optional[BeaconError] = None
        self._goodbye_wait = threading.Event()

        self.ready = threading.Event()
        self.settled = threading.Event()
        self.finished = threading.Event()
        self.error: Optional[BeaconError] = None

    # -- read-only views -------------------------------------------------

    @property
    def state(self) -> ResponderState:
        return self._state

    @property
    def instance(self) -> ServiceInstance:
        return self._instance

    @property
    def records(self) -> RecordSet:
        return self._records

    # -- lifecycle ---------------------------------------------------------

    def start(self, background: bool = True) -> None:
        """Initial -> Probing. With background=False the caller drives drain()."""

        if self._state is not ResponderState.INITIAL:
            raise RuntimeError("responder already started")
        self._generation = 1
        self._set_state(ResponderState.PROBING)
        if self.probe:
            delay = random.uniform(0.0, self.probe_interval)
            self._scheduler.call_later(
                delay, self._enqueue, _Timer("probe", self._generation, 0)
            )
        else:
            self._enqueue(_Timer("probe", self._generation, self.probe_count))
        if background:
            self._thread = threading.Thread(
                target=self._run, name="airdecoy-responder", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """
        Brief: Request ShuttingDown, emit goodbyes, and wait for the worker.

        Inputs:
        - timeout: seconds to wait for the worker thread

        Outputs:
        - None

        Raises:
        - AlreadyShutDown: stop() was already called
        """
        with self._lock:
            if self._stop_requested.is_set():
                raise AlreadyShutDown("responder already stopped")
            self._stop_requested.set()

        if self._thread is None:
            self._shutdown()
            self.finished.set()
            return

        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            # The worker also polls _stop_requested between items.
            pass
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Responder did not finish within %.1fs", timeout)
            self._goodbye_wait.set()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until Responding or a fatal error; re-raise the fatal error."""

        self.settled.wait(timeout)
        if self.error is not None:
            raise self.error
        return self.ready.is_set()

    # -- inbound -------------------------------------------------------------

    def submit(self, data: bytes, provenance: Provenance) -> None:
        """Reader-thread entry point; never blocks."""

        if self._state is ResponderState.SHUTTING_DOWN:
            return
        try:
            self._queue.put_nowait(_Datagram(bytes(data), provenance))
        except queue.Full:
            logger.debug("Work queue full; dropping datagram from %s", provenance)

    def notify_fatal(self, error: BeaconError) -> None:
        """Transport callback for loss of the last socket."""

        self._pending_fatal = error
        try:
            self._queue.put_nowait(_Fatal(error))
        except queue.Full:
            pass

    def _enqueue(self, item: Any) -> None:
        try:
            self._queue.put(item, timeout=1.0)
        except queue.Full:
            logger.warning("Work queue full; dropped timer event %r", item)

    # -- worker --------------------------------------------------------------

    def _run(self) -> None:
        try:
            while self._state is not ResponderState.SHUTTING_DOWN:
                if self._pending_fatal is not None:
                    self._fatal(self._pending_fatal)
                    break
                if self._stop_requested.is_set():
                    self._shutdown()
                    break
                try:
                    item = self._queue.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue
                self.process(item)
        except Exception as exc:  # pragma: no cover - last-resort guard
            logger.exception("Responder worker crashed")
            self._fatal(BeaconError("responder crashed: %s" % (exc,)))
        finally:
            self.finished.set()

    def drain(self) -> int:
        """Process every queued item on the calling thread; returns the count."""

        n = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return n
            self.process(item)
            n += 1

    def process(self, item: Any) -> None:
        if item is _STOP:
            self._shutdown()
        elif isinstance(item, _Fatal):
            self._fatal(item.error)
        elif isinstance(item, _Timer):
            if item.kind == "probe":
                self._on_probe_timer(item.generation, item.count)
            elif item.kind == "announce":
                self._on_announce_timer(item.generation, item.count)
        elif isinstance(item, _Datagram):
            self.handle_datagram(item.data, item.provenance)

    def _set_state(self, state: ResponderState) -> None:
        if state is not self._state:
            logger.debug("Responder %s -> %s", self._state.value, state.value)
            self._state = state

    def _fatal(self, error: BeaconError) -> None:
        if self.error is None:
            self.error = error
        self._set_state(ResponderState.SHUTTING_DOWN)
        self._scheduler.cancel_all()
        self.settled.set()

    def _shutdown(self) -> None:
        previous = self._state
        if previous is ResponderState.SHUTTING_DOWN:
            return
        self._set_state(ResponderState.SHUTTING_DOWN)
        self._scheduler.cancel_all()
        self.settled.set()
        if previous in (ResponderState.ANNOUNCING, ResponderState.RESPONDING):
            emit_goodbyes(
                self._multicast,
                self._records,
                count=self.goodbye_count,
                interval=self.goodbye_interval,
                stop_wait=self._goodbye_wait,
            )

    # -- probing and announcing ------------------------------------------------

    def _on_probe_timer(self, generation: int, count: int) -> None:
        if generation != self._generation or self._state is not ResponderState.PROBING:
            return
        if count < self.probe_count and self.probe:
            self._multicast(probe_message(self._records, first=(count == 0)))
            self._scheduler.call_later(
                self.probe_interval, self._enqueue, _Timer("probe", generation, count + 1)
            )
            return
        if self.probe:
            logger.info("Probing complete; %s is unique", self._records.srv.name)
        self._set_state(ResponderState.ANNOUNCING)
        self._on_announce_timer(generation, 0)

    def _on_announce_timer(self, generation: int, count: int) -> None:
        if generation != self._generation or self._state is not ResponderState.ANNOUNCING:
            return
        self._multicast(announcement_message(self._records))
        if count + 1 < self.announce_count:
            delay = self.announce_interval * (2 ** count)
            self._scheduler.call_later(
                delay, self._enqueue, _Timer("announce", generation, count + 1)
            )
            return
        self._set_state(ResponderState.RESPONDING)
        logger.info(
            "Advertising %s on port %d (host %s)",
            self._records.srv.name,
            self._instance.port,
            self._instance.hostname,
        )
        self.ready.set()
        self.settled.set()

    def _on_conflict(self, names: List[dns.name.Name]) -> None:
        if self._attempt >= self.probe_attempts:
            self._fatal(
                ProbeFailed(
                    "name conflict persisted after %d probing attempts (last tried %r)"
                    % (self._attempt, self._instance.instance)
                )
            )
            return
        self._attempt += 1
        if self._instance.instance_name in names:
            self._rename_instance = True
        if self._instance.host_name in names:
            self._rename_host = True

        renamed = self._base.renamed(
            self._attempt,
            instance=self._rename_instance,
            hostname=self._rename_host,
        )
        logger.warning(
            "Name conflict on %s; renaming to %r (host %s)",
            ", ".join(str(n) for n in names),
            renamed.instance,
            renamed.hostname,
        )
        try:
            records = build_records(renamed)
        except (OversizedRecord, ValueError) as exc:
            self._fatal(ProbeFailed("cannot rename after conflict: %s" % (exc,)))
            return
        self._instance = renamed
        self._records = records
        self._generation += 1
        self._scheduler.call_later(
            self.probe_interval, self._enqueue, _Timer("probe", self._generation, 0)
        )

    # -- datagrams -----------------------------------------------------------

    def handle_datagram(self, data: bytes, provenance: Provenance) -> None:
        """Decode one datagram and act on it according to the current state."""

        try:
            msg = decode_message(data)
        except MalformedPacket as exc:
            logger.debug("Dropping malformed packet from %s: %s", provenance, exc)
            return
        if msg.opcode != 0:
            return

        state = self._state
        if state is ResponderState.PROBING:
            self._check_probe_conflict(msg)
        elif state in (ResponderState.ANNOUNCING, ResponderState.RESPONDING):
            if msg.is_response:
                self._check_late_conflict(msg)
            else:
                self.answer(msg, provenance)

    def _check_probe_conflict(self, msg: MdnsMessage) -> None:
        names: List[dns.name.Name] = []
        if msg.is_response:
            for rr in conflicting_records(self._records, msg.answers + msg.additionals):
                if rr.name not in names:
                    names.append(rr.name)
        else:
            unique = self._records.unique()
            for name in self._records.unique_names:
                theirs = [rr for rr in msg.authorities if rr.name == name]
                if not theirs:
                    continue
                ours = [rr for rr in unique if rr.name == name]
                if lost_tiebreak(ours, theirs):
                    names.append(name)
        if names:
            self._on_conflict(names)

    def _check_late_conflict(self, msg: MdnsMessage) -> None:
        for rr in conflicting_records(self._records, msg.answers + msg.additionals):
            if rr.key in self._warned_conflicts:
                continue
            self._warned_conflicts.add(rr.key)
            logger.warning("Another responder claims %s", rr)

    def _additionals(self, answers: List[ResourceRecord]) -> List[ResourceRecord]:
        rs = self._records
        present = {rr.key for rr in answers}
        extra: List[ResourceRecord] = []

        def _add(rr: ResourceRecord) -> None:
            if rr.key not in present:
                present.add(rr.key)
                extra.append(rr)

        for rr in answers:
            if rr.key == rs.ptr.key:
                _add(rs.srv)
                _add(rs.txt)
                for addr in rs.addresses:
                    _add(addr)
            elif rr.rdtype == dns.rdatatype.SRV:
                for addr in rs.addresses:
                    _add(addr)
        return extra

    def answer(self, msg: MdnsMessage, provenance: Provenance) -> None:
        """
        Brief: Answer one query (QR=0) that arrived on `provenance`.

        Inputs:
        - msg: decoded query
        - provenance: arrival information; responses leave on the same link

        Outputs:
        - None; zero, one or two responses are sent (unicast and/or multicast)
        """
        if msg.truncated:
            logger.debug("Query from %s has TC set; answering what we have", provenance)

        known: Dict[Tuple, int] = {}
        for rr in msg.answers:
            known[rr.key] = max(known.get(rr.key, 0), rr.ttl)

        answers: List[ResourceRecord] = []
        wants_unicast: Dict[Tuple, bool] = {}
        for q in msg.questions:
            if q.rdclass not in (dns.rdataclass.IN, dns.rdataclass.ANY):
                continue
            for rr in self._records.lookup(q.name, q.rdtype):
                if rr.key in wants_unicast:
                    wants_unicast[rr.key] = wants_unicast[rr.key] and q.unicast
                    continue
                wants_unicast[rr.key] = q.unicast
                if known.get(rr.key, -1) >= rr.ttl / 2.0:
                    logger.debug("Known answer suppresses %s", rr)
                    continue
                answers.append(rr)

        if not answers:
            return

        if provenance.legacy_unicast:
            self._answer_legacy(msg, answers, provenance)
            return

        unicast: List[ResourceRecord] = []
        multicast: List[ResourceRecord] = []
        for rr in answers:
            if wants_unicast.get(rr.key) and not self._recently_multicast(
                provenance, rr
            ):
                unicast.append(rr)
            else:
                multicast.append(rr)

        if unicast:
            response = make_response(unicast, self._additionals(unicast))
            self._send(response, provenance, unicast=True)
        if multicast:
            response = make_response(multicast, self._additionals(multicast))
            self._send(response, provenance, unicast=False)

    def _answer_legacy(
        self,
        msg: MdnsMessage,
        answers: List[ResourceRecord],
        provenance: Provenance,
    ) -> None:
        def _legacy(rr: ResourceRecord) -> ResourceRecord:
            return dataclasses.replace(
                rr, cache_flush=False, ttl=min(rr.ttl, LEGACY_UNICAST_TTL)
            )

        response = make_response(
            [_legacy(rr) for rr in answers],
            [_legacy(rr) for rr in self._additionals(answers)],
            msg_id=msg.id,
            questions=[dataclasses.replace(q, unicast=False) for q in msg.questions],
        )
        self._send(response, provenance, unicast=True)

    # -- outbound --------------------------------------------------------------

    def _recently_multicast(self, provenance: Provenance, rr: ResourceRecord) -> bool:
        return (provenance.link_key, rr.key) in self._recent_multicast

    def _mark_multicast(self, link_keys: List[Tuple[int, int]], msg: MdnsMessage) -> None:
        now = self._clock()
        for rr in msg.answers + msg.additionals:
            for lk in link_keys:
                self._recent_multicast[(lk, rr.key)] = now

    def _encode(self, msg: MdnsMessage) -> Optional[bytes]:
        try:
            return encode_message(msg)
        except OversizedRecord as exc:
            logger.warning("Dropping outgoing message: %s", exc)
            return None

    def _multicast(self, msg: MdnsMessage) -> int:
        """Send an unsolicited message on every active link."""

        wire = self._encode(msg)
        if wire is None:
            return 0
        link_keys = [(link.index, link.family) for link in self.transport.active_links]
        sent = self.transport.send_multicast(wire)
        if sent and msg.is_response:
            self._mark_multicast(link_keys, msg)
        return sent

    def _send(self, msg: MdnsMessage, provenance: Provenance, *, unicast: bool) -> bool:
        wire = self._encode(msg)
        if wire is None:
            return False
        if not unicast:
            cache_key = (provenance.link_key, wire)
            if cache_key in self._recent_responses:
                logger.debug("Rate limit suppresses repeat response on %s", provenance)
                return False
            self._recent_responses[cache_key] = self._clock()
        sent = self.transport.send_to(wire, provenance, unicast=unicast)
        if sent and not unicast:
            self._mark_multicast([provenance.link_key], msg)
        logger.debug(
            "Answered %s with %d record(s) (%s)",
            provenance,
            len(msg.answers),
            "unicast" if unicast else "multicast",
        )
        return sent
