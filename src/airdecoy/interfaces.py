"""Local network interface discovery and multicast eligibility filtering."""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import psutil  # type: ignore[import-untyped]

from .errors import NoEligibleInterfaces
from .records import IPAddress

logger = logging.getLogger(__name__)

_FAMILY_LABELS = {socket.AF_INET: "ipv4", socket.AF_INET6: "ipv6"}


def family_label(family: int) -> str:
    return _FAMILY_LABELS.get(family, str(family))


@dataclass(frozen=True)
class Interface:
    """Brief: A local NIC as seen at startup.

    Inputs:
      - name: OS interface name (e.g. `eth0`).
      - index: OS interface index (0 when unknown).
      - up: administratively up.
      - loopback: loopback flag.
      - multicast: multicast-capable flag.
      - addresses: unicast addresses bound to the interface.
    """

    name: str
    index: int
    up: bool
    loopback: bool
    multicast: bool
    addresses: Tuple[IPAddress, ...] = ()

    def usable_addresses(self, include_link_local: bool = True) -> List[IPAddress]:
        out: List[IPAddress] = []
        for addr in self.addresses:
            if addr.is_loopback or addr.is_multicast or addr.is_unspecified:
                continue
            if addr.is_link_local and not include_link_local:
                continue
            out.append(addr)
        return out

    @property
    def eligible(self) -> bool:
        """up AND multicast-capable AND at least one non-loopback unicast address."""

        return self.up and self.multicast and bool(self.usable_addresses())


@dataclass(frozen=True)
class Link:
    """Brief: One (interface, address family) pair driven independently.

    Inputs:
      - interface: the Interface.
      - family: socket.AF_INET or socket.AF_INET6.
      - addresses: usable addresses of that family on the interface.
    """

    interface: Interface
    family: int
    addresses: Tuple[IPAddress, ...]

    @property
    def name(self) -> str:
        return self.interface.name

    @property
    def index(self) -> int:
        return self.interface.index

    @property
    def address(self) -> IPAddress:
        """Preferred source address: first routable one, else the first."""

        for addr in self.addresses:
            if not addr.is_link_local:
                return addr
        return self.addresses[0]

    @property
    def label(self) -> str:
        return "%s/%s" % (self.interface.name, family_label(self.family))


def _parse_address(raw: str) -> Optional[IPAddress]:
    # psutil reports IPv6 link-local addresses with a "%scope" suffix.
    text = str(raw).split("%", 1)[0]
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _if_index(name: str) -> int:
    try:
        return socket.if_nametoindex(name)
    except OSError:
        return 0


def enumerate_interfaces() -> List[Interface]:
    """
    Brief: Enumerate local interfaces with their flags and unicast addresses.

    Inputs:
    - None (reads psutil.net_if_addrs() and psutil.net_if_stats())

    Outputs:
    - list[Interface], sorted by interface index then name

    Notes:
    - psutil exposes a `flags` string on Linux and the BSDs. Where it is
      missing, loopback is inferred from the addresses and every interface is
      assumed multicast-capable.
    """
    addrs = psutil.net_if_addrs()
    stats = psutil.net_if_stats()

    interfaces: List[Interface] = []
    for name, entries in addrs.items():
        parsed: List[IPAddress] = []
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            ip = _parse_address(entry.address)
            if ip is not None and ip not in parsed:
                parsed.append(ip)

        st = stats.get(name)
        up = bool(st.isup) if st is not None else False
        flags = {
            f.strip()
            for f in str(getattr(st, "flags", "") or "").split(",")
            if f.strip()
        }
        if flags:
            loopback = "loopback" in flags
            multicast = "multicast" in flags
        else:
            loopback = bool(parsed) and all(ip.is_loopback for ip in parsed)
            multicast = True

        interfaces.append(
            Interface(
                name=name,
                index=_if_index(name),
                up=up,
                loopback=loopback,
                multicast=multicast,
                addresses=tuple(parsed),
            )
        )

    interfaces.sort(key=lambda i: (i.index, i.name))
    return interfaces


def _families_for(ip_version: str) -> Tuple[int, ...]:
    v = str(ip_version or "all").strip().lower()
    if v in {"v4", "ipv4", "4"}:
        return (socket.AF_INET,)
    if v in {"v6", "ipv6", "6"}:
        return (socket.AF_INET6,)
    if v in {"all", "both"}:
        return (socket.AF_INET, socket.AF_INET6)
    raise ValueError("ip_version must be one of all|v4|v6, got %r" % (ip_version,))


def select_interfaces(
    candidates: Iterable[Interface],
    names: Optional[Sequence[str]] = None,
    *,
    ip_version: str = "all",
    include_link_local: bool = True,
) -> List[Link]:
    """
    Brief: Filter interfaces to those eligible for mDNS and expand to links.

    Inputs:
    - candidates: enumerated interfaces
    - names: optional explicit interface names to intersect with
    - ip_version: "all" | "v4" | "v6"
    - include_link_local: when False, link-local addresses are discarded and
      interfaces left with only link-local addresses are dropped

    Outputs:
    - list[Link]: one entry per (interface, family) with at least one usable
      address of that family

    Raises:
    - NoEligibleInterfaces: nothing remains after filtering

    Example:
        >>> eth = Interface("eth0", 2, True, False, True,
        ...                 (ipaddress.ip_address("192.0.2.5"),))
        >>> [link.label for link in select_interfaces([eth])]
        ['eth0/ipv4']
    """
    families = _families_for(ip_version)
    wanted = None
    if names:
        wanted = [str(n) for n in names]

    links: List[Link] = []
    seen_names = set()
    for iface in candidates:
        seen_names.add(iface.name)
        if wanted is not None and iface.name not in wanted:
            continue
        if not iface.up:
            logger.debug("Skipping interface %s: interface is down", iface.name)
            continue
        if not iface.multicast:
            logger.debug("Skipping interface %s: no multicast support", iface.name)
            continue
        usable = iface.usable_addresses(include_link_local)
        if not usable:
            logger.debug("Skipping interface %s: no usable unicast address", iface.name)
            continue
        for family in families:
            version = 4 if family == socket.AF_INET else 6
            fam_addrs = tuple(a for a in usable if a.version == version)
            if fam_addrs:
                links.append(Link(interface=iface, family=family, addresses=fam_addrs))

    if wanted is not None:
        for name in wanted:
            if name not in seen_names:
                logger.warning("Configured interface %s does not exist", name)

    if not links:
        detail = " among %s" % ", ".join(wanted) if wanted else ""
        raise NoEligibleInterfaces(
            "no up, multicast-capable interface with a usable address%s" % detail
        )

    for link in links:
        logger.info(
            "Selected %s (index %d, %s)",
            link.label,
            link.index,
            ", ".join(str(a) for a in link.addresses),
        )
    return links


def link_addresses(links: Iterable[Link]) -> Tuple[IPAddress, ...]:
    """Distinct addresses over all links, in link order."""

    out: List[IPAddress] = []
    for link in links:
        for addr in link.addresses:
            if addr not in out:
                out.append(addr)
    return tuple(out)
