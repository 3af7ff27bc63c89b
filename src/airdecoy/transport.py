"""Multicast UDP transport: one socket and one reader thread per link.

Brief:
  Each selected (interface, family) link gets its own datagram socket bound to
  port 5353 and joined to the mDNS group on that interface only. Reader threads
  hand `(datagram, Provenance)` pairs to a deliver callback; the responder uses
  the provenance to answer on the interface the query arrived on.

Inputs:
  - A list of interfaces.Link values.

Outputs:
  - MulticastTransport with send_multicast()/send_to()/close().
"""

from __future__ import annotations

import errno
import ipaddress
import logging
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import TransportSocketError
from .interfaces import Link, family_label

logger = logging.getLogger(__name__)

MDNS_PORT = 5353
MDNS_GROUP_V4 = "224.0.0.251"
MDNS_GROUP_V6 = "ff02::fb"
MAX_DATAGRAM = 9000
MULTICAST_TTL = 255

_LINUX = sys.platform.startswith("linux")
# Not every Python build exports these; the values are the Linux ABI ones.
_IP_PKTINFO = getattr(socket, "IP_PKTINFO", 8 if _LINUX else None)
_IP_MULTICAST_ALL = getattr(socket, "IP_MULTICAST_ALL", 49 if _LINUX else None)
_IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", None)
_IPV6_PKTINFO = getattr(socket, "IPV6_PKTINFO", None)

_IN_PKTINFO = struct.Struct("=i4s4s")
_IN6_PKTINFO = struct.Struct("=16sI")
_ANC_BUFSIZE = socket.CMSG_SPACE(_IN6_PKTINFO.size) + socket.CMSG_SPACE(
    _IN_PKTINFO.size
)


@dataclass(frozen=True)
class Provenance:
    """Brief: Where a datagram came from and which link received it.

    Inputs:
      - source_address: sender IP (scope suffix stripped).
      - source_port: sender UDP port.
      - interface_name / interface_index / family: the arrival link.
    """

    source_address: str
    source_port: int
    interface_name: str
    interface_index: int
    family: int

    @property
    def link_key(self) -> Tuple[int, int]:
        return (self.interface_index, self.family)

    @property
    def legacy_unicast(self) -> bool:
        """Queries not sourced from port 5353 come from one-shot resolvers."""

        return self.source_port != MDNS_PORT

    def __str__(self) -> str:
        return "%s:%d via %s/%s" % (
            self.source_address,
            self.source_port,
            self.interface_name,
            family_label(self.family),
        )


Deliver = Callable[[bytes, Provenance], None]
SocketOpener = Callable[..., socket.socket]


def _set_opt_best_effort(sock: socket.socket, level: int, opt: Optional[int], value) -> None:
    if opt is None:
        return
    try:
        sock.setsockopt(level, opt, value)
    except OSError as exc:
        logger.debug("setsockopt(%s, %s) not supported: %s", level, opt, exc)


def open_multicast_socket(
    link: Link,
    *,
    port: int = MDNS_PORT,
    loopback: bool = False,
    timeout: float = 0.5,
) -> socket.socket:
    """
    Brief: Open a UDP socket joined to the mDNS group on one link.

    Inputs:
    - link: (interface, family) to serve
    - port: UDP port to bind (5353 for mDNS)
    - loopback: whether our own multicast is looped back to local sockets
    - timeout: socket timeout so reader threads can observe shutdown

    Outputs:
    - socket.socket bound to the wildcard address with address reuse, group
      membership on link's interface, outbound interface set, TTL/hop limit 255

    Raises:
    - OSError: socket creation, bind or membership failed
    """
    family = link.family
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        reuseport = getattr(socket, "SO_REUSEPORT", None)
        if reuseport is not None:
            try:
                sock.setsockopt(socket.SOL_SOCKET, reuseport, 1)
            except OSError as exc:
                if exc.errno != errno.ENOPROTOOPT:
                    raise

        if family == socket.AF_INET:
            local = socket.inet_aton(str(link.address))
            _set_opt_best_effort(sock, socket.IPPROTO_IP, _IP_MULTICAST_ALL, 0)
            _set_opt_best_effort(sock, socket.IPPROTO_IP, _IP_PKTINFO, 1)
            sock.setsockopt(
                socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, struct.pack("B", MULTICAST_TTL)
            )
            sock.setsockopt(
                socket.IPPROTO_IP,
                socket.IP_MULTICAST_LOOP,
                struct.pack("B", 1 if loopback else 0),
            )
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, MULTICAST_TTL)
            sock.bind(("", port))
            mreq = socket.inet_aton(MDNS_GROUP_V4) + local
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, local)
        else:
            ifindex = struct.pack("@I", link.index)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            _set_opt_best_effort(sock, socket.IPPROTO_IPV6, _IPV6_RECVPKTINFO, 1)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, MULTICAST_TTL)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, MULTICAST_TTL)
            sock.setsockopt(
                socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_LOOP, 1 if loopback else 0
            )
            sock.bind(("::", port))
            mreq = socket.inet_pton(socket.AF_INET6, MDNS_GROUP_V6) + ifindex
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, mreq)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_IF, ifindex)
        sock.settimeout(timeout)
    except OSError:
        sock.close()
        raise
    return sock


def _parse_pktinfo(family: int, ancdata) -> Tuple[Optional[int], Optional[str]]:
    """Return (arrival ifindex, destination address) from recvmsg ancillary data."""

    for level, ctype, data in ancdata or []:
        if family == socket.AF_INET and level == socket.IPPROTO_IP and ctype == _IP_PKTINFO:
            if len(data) >= _IN_PKTINFO.size:
                ifindex, _spec, dst = _IN_PKTINFO.unpack(data[: _IN_PKTINFO.size])
                return ifindex, socket.inet_ntoa(dst)
        if (
            family == socket.AF_INET6
            and level == socket.IPPROTO_IPV6
            and ctype == _IPV6_PKTINFO
        ):
            if len(data) >= _IN6_PKTINFO.size:
                dst, ifindex = _IN6_PKTINFO.unpack(data[: _IN6_PKTINFO.size])
                return ifindex, socket.inet_ntop(socket.AF_INET6, dst)
    return None, None


class _LinkSocket:
    """A link, its socket, and the reader thread draining it."""

    def __init__(self, link: Link, sock: socket.socket) -> None:
        self.link = link
        self.sock = sock
        self.thread: Optional[threading.Thread] = None

    @property
    def key(self) -> Tuple[int, int]:
        return (self.link.index, self.link.family)


class MulticastTransport:
    """
    Brief: Owns the per-link sockets and reader threads.

    Inputs:
    - links: selected (interface, family) pairs
    - loopback: enable multicast loopback (local-process testing)
    - poll_interval: socket timeout used by reader threads
    - opener: socket factory, `opener(link, port=..., loopback=..., timeout=...)`
    - on_fatal: called once with TransportSocketError when the last socket is lost

    Outputs:
    - MulticastTransport. Call open(), then start(deliver), and finally close().

    Example:
        >>> transport = MulticastTransport(links)  # doctest: +SKIP
        >>> transport.open(); transport.start(responder.submit)  # doctest: +SKIP
    """

    def __init__(
        self,
        links: Sequence[Link],
        *,
        loopback: bool = False,
        port: int = MDNS_PORT,
        poll_interval: float = 0.5,
        opener: SocketOpener = open_multicast_socket,
        on_fatal: Optional[Callable[[TransportSocketError], None]] = None,
    ) -> None:
        self.links = list(links)
        self.loopback = loopback
        self.port = port
        self.poll_interval = poll_interval
        self._opener = opener
        self.on_fatal = on_fatal
        self._lock = threading.Lock()
        self._active: Dict[Tuple[int, int], _LinkSocket] = {}
        self._closing = threading.Event()
        self._fatal_reported = False
        self._deliver: Optional[Deliver] = None

    @property
    def active_links(self) -> List[Link]:
        with self._lock:
            return [ls.link for ls in self._active.values()]

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    def open(self) -> None:
        """Open one socket per link; a failing link is skipped with a warning.

        Raises TransportSocketError when no link could be opened.
        """

        for link in self.links:
            try:
                sock = self._opener(
                    link,
                    port=self.port,
                    loopback=self.loopback,
                    timeout=self.poll_interval,
                )
            except OSError as exc:
                logger.warning("Could not open mDNS socket on %s: %s", link.label, exc)
                continue
            ls = _LinkSocket(link, sock)
            with self._lock:
                self._active[ls.key] = ls
            logger.info("Joined mDNS group on %s", link.label)

        if not self._active:
            raise TransportSocketError("could not open an mDNS socket on any interface")

    def start(self, deliver: Deliver) -> None:
        """Start one daemon reader thread per open socket."""

        self._deliver = deliver
        with self._lock:
            sockets = list(self._active.values())
        for ls in sockets:
            t = threading.Thread(
                target=self._read_loop,
                args=(ls,),
                name="airdecoy-reader-%s" % ls.link.label,
                daemon=True,
            )
            ls.thread = t
            t.start()

    def _read_loop(self, ls: _LinkSocket) -> None:
        while not self._closing.is_set():
            try:
                data, ancdata, _flags, addr = ls.sock.recvmsg(MAX_DATAGRAM, _ANC_BUFSIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closing.is_set():
                    break
                self._fail(ls, exc)
                break
            prov = self._provenance(ls, ancdata, addr)
            if prov is None or self._deliver is None:
                continue
            try:
                self._deliver(data, prov)
            except Exception:  # pragma: no cover - deliver is expected not to raise
                logger.exception("Error while delivering datagram from %s", prov)

    def _provenance(self, ls: _LinkSocket, ancdata, addr) -> Optional[Provenance]:
        link = ls.link
        ifindex, dst = _parse_pktinfo(link.family, ancdata)
        if ifindex and ifindex != link.index:
            with self._lock:
                other = self._active.get((ifindex, link.family))
            if other is None:
                logger.debug(
                    "Dropping datagram from non-selected interface index %d", ifindex
                )
                return None
            if dst is not None and ipaddress.ip_address(dst).is_multicast:
                # The socket joined on that interface receives its own copy.
                return None
            link = other.link
        host = str(addr[0]).split("%", 1)[0]
        return Provenance(
            source_address=host,
            source_port=int(addr[1]),
            interface_name=link.name,
            interface_index=link.index,
            family=link.family,
        )

    def _fail(self, ls: _LinkSocket, exc: BaseException) -> None:
        with self._lock:
            removed = self._active.pop(ls.key, None)
            remaining = len(self._active)
        if removed is None:
            return
        logger.warning(
            "mDNS socket on %s failed (%s); %d socket(s) remain",
            ls.link.label,
            exc,
            remaining,
        )
        try:
            ls.sock.close()
        except OSError:
            pass
        if remaining == 0 and not self._closing.is_set():
            self._report_fatal(
                TransportSocketError(
                    "lost the last mDNS socket (%s): %s" % (ls.link.label, exc),
                    link=ls.link.label,
                )
            )

    def _report_fatal(self, err: TransportSocketError) -> None:
        with self._lock:
            if self._fatal_reported:
                return
            self._fatal_reported = True
        logger.error("%s", err)
        if self.on_fatal is not None:
            self.on_fatal(err)

    def _sendto(self, ls: _LinkSocket, data: bytes, dest: Tuple) -> bool:
        try:
            ls.sock.sendto(data, dest)
        except OSError as exc:
            self._fail(ls, exc)
            return False
        return True

    def _group_dest(self, ls: _LinkSocket) -> Tuple:
        if ls.link.family == socket.AF_INET6:
            return (MDNS_GROUP_V6, self.port, 0, ls.link.index)
        return (MDNS_GROUP_V4, self.port)

    def send_multicast(self, data: bytes) -> int:
        """
        Brief: Send one datagram to the mDNS group on every active link.

        Inputs:
        - data: wire-format DNS message

        Outputs:
        - int: number of links the datagram was sent on (0 after close())
        """
        if self._closing.is_set():
            return 0
        with self._lock:
            sockets = list(self._active.values())
        sent = 0
        for ls in sockets:
            if self._sendto(ls, data, self._group_dest(ls)):
                sent += 1
        return sent

    def send_to(
        self,
        data: bytes,
        provenance: Provenance,
        *,
        unicast: bool = False,
        port: Optional[int] = None,
    ) -> bool:
        """
        Brief: Send a response on the link a query arrived on.

        Inputs:
        - data: wire-format DNS message
        - provenance: arrival information of the triggering query
        - unicast: send to the query's source instead of the group
        - port: destination port for unicast (defaults to the source port)

        Outputs:
        - bool: True when the datagram was handed to the socket
        """
        if self._closing.is_set():
            return False
        with self._lock:
            ls = self._active.get(provenance.link_key)
        if ls is None:
            logger.debug("No active socket for %s; dropping response", provenance)
            return False
        if not unicast:
            return self._sendto(ls, data, self._group_dest(ls))
        dport = provenance.source_port if port is None else port
        if ls.link.family == socket.AF_INET6:
            dest: Tuple = (provenance.source_address, dport, 0, ls.link.index)
        else:
            dest = (provenance.source_address, dport)
        return self._sendto(ls, data, dest)

    def close(self, timeout: float = 1.0) -> None:
        """Close every socket and join the reader threads. Idempotent.

        `timeout` bounds all joins together, not each reader separately.
        """

        if self._closing.is_set():
            return
        deadline = time.monotonic() + max(0.0, timeout)
        self._closing.set()
        with self._lock:
            sockets = list(self._active.values())
            self._active.clear()
        for ls in sockets:
            try:
                ls.sock.close()
            except OSError:
                pass
        for ls in sockets:
            if ls.thread is not None and ls.thread is not threading.current_thread():
                ls.thread.join(timeout=max(0.0, deadline - time.monotonic()))
        logger.info("Closed %d mDNS socket(s)", len(sockets))
