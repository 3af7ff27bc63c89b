from __future__ import annotations

import dataclasses
import ipaddress
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import dns.name
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.PTR
import dns.rdtypes.ANY.TXT
import dns.rdtypes.IN.A
import dns.rdtypes.IN.AAAA
import dns.rdtypes.IN.SRV

from .dns_message import ResourceRecord
from .errors import OversizedRecord

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_SERVICE_TYPE = "_airplay._tcp"
DEFAULT_DOMAIN = "local."
DEFAULT_TTL = 120
DEFAULT_HOST_TTL = 75

MAX_LABEL_OCTETS = 63
MAX_NAME_OCTETS = 255
MAX_TXT_ENTRY_OCTETS = 255
MAX_TXT_OCTETS = 65535

SERVICE_ENUMERATION_PREFIX = "_services._dns-sd._udp"

# Keys of the AirPlay TXT profile, in serialization order.
AIRPLAY_TXT_KEYS: Tuple[str, ...] = (
    "deviceid",
    "features",
    "model",
    "pk",
    "pi",
    "flags",
    "rmodel",
    "srcvers",
    "vv",
    "rrv",
    "rsv",
)

# TXT set advertised by the receiver this package stands in for.
DEFAULT_AIRPLAY_TXT: Tuple[str, ...] = (
    "deviceid=00:05:CD:D4:42:38",
    "features=0x5A7FFFF7,0x1E",
    "model=AppleTV3,2",
    "pk=482131eacf7e006792da125540724283fb3f2ba6a25cabe13b5f1543b3b234bd",
    "pi=5e66cf9b-0a39-4e0c-9d32-081a8ce63231",
    "flags=0x4",
    "rmodel=PC1.0",
    "srcvers=220.68",
    "vv=2",
    "rrv=1.01",
    "rsv=1.00",
)


def split_name(text: str) -> List[bytes]:
    """Brief: Split a dotted name into UTF-8 labels, dropping the root.

    Inputs:
      - text: dotted name such as `_airplay._tcp` or `local.`.

    Outputs:
      - list[bytes]: one entry per label.

    Example:
      >>> split_name("_airplay._tcp.local.")
      [b'_airplay', b'_tcp', b'local']
    """

    return [p.encode("utf-8") for p in str(text).strip().strip(".").split(".") if p]


def make_name(labels: Sequence[bytes]) -> dns.name.Name:
    """Brief: Build an absolute name, enforcing the RFC 1035 size limits.

    Inputs:
      - labels: raw label octets, most specific first. Labels may contain
        dots or spaces; they are not re-split.

    Outputs:
      - dns.name.Name (absolute).

    Raises:
      - OversizedRecord: a label exceeds 63 octets or the name exceeds 255.
    """

    wire_len = 1
    for label in labels:
        if not label:
            raise OversizedRecord("empty DNS label in %r" % (list(labels),))
        if len(label) > MAX_LABEL_OCTETS:
            raise OversizedRecord(
                "DNS label %r is %d octets (limit %d)"
                % (label, len(label), MAX_LABEL_OCTETS)
            )
        wire_len += len(label) + 1
    if wire_len > MAX_NAME_OCTETS:
        raise OversizedRecord(
            "DNS name is %d octets (limit %d)" % (wire_len, MAX_NAME_OCTETS)
        )
    return dns.name.Name(list(labels) + [b""])


def normalize_txt(
    txt: Union[None, Mapping[str, object], Iterable[object]],
) -> Tuple[str, ...]:
    """Brief: Normalize TXT attributes to an ordered tuple of `key=value` strings.

    Inputs:
      - txt: None, an ordered mapping (key -> value, None meaning a boolean
        attribute), or an iterable of `key=value` / `key` strings.

    Outputs:
      - tuple[str, ...] preserving input order.
    """

    if txt is None:
        return ()
    if isinstance(txt, Mapping):
        out: List[str] = []
        for k, v in txt.items():
            out.append(str(k) if v is None else "%s=%s" % (k, v))
        return tuple(out)
    if isinstance(txt, (str, bytes)):
        raise ValueError("txt must be a list of key=value entries, not a string")
    return tuple(str(item) for item in txt)


def _txt_key_ok(key: str) -> bool:
    return bool(key) and all(0x20 <= ord(c) <= 0x7E and c != "=" for c in key)


def pack_txt(entries: Sequence[str]) -> List[bytes]:
    """
    Brief: Encode TXT attributes as DNS character-strings.

    Inputs:
    - entries: ordered `key=value` (or bare `key`) strings

    Outputs:
    - list[bytes], one element per character-string. An empty input yields a
      single zero-length string so the TXT RDATA is never empty.

    Raises:
    - OversizedRecord: an entry exceeds 255 octets or the record exceeds 65535.
    - ValueError: a key is empty, non-ASCII, or contains '='.

    Example:
        >>> pack_txt(["vv=2", "flags=0x4"])
        [b'vv=2', b'flags=0x4']
        >>> pack_txt([])
        [b'']
    """
    packed: List[bytes] = []
    total = 0
    for entry in entries:
        key = entry.split("=", 1)[0]
        if not _txt_key_ok(key):
            raise ValueError("invalid TXT key %r" % (key,))
        data = entry.encode("utf-8")
        if len(data) > MAX_TXT_ENTRY_OCTETS:
            raise OversizedRecord(
                "TXT entry for key %r is %d octets (limit %d)"
                % (key, len(data), MAX_TXT_ENTRY_OCTETS)
            )
        total += len(data) + 1
        packed.append(data)
    if total > MAX_TXT_OCTETS:
        raise OversizedRecord(
            "TXT record is %d octets (limit %d)" % (total, MAX_TXT_OCTETS)
        )
    return packed or [b""]


def _numbered_label(base: str, suffix: str) -> bytes:
    """Append suffix to base, trimming base on a UTF-8 boundary to fit 63 octets."""

    suffix_b = suffix.encode("utf-8")
    room = MAX_LABEL_OCTETS - len(suffix_b)
    base_b = base.encode("utf-8")
    if len(base_b) > room:
        base_b = base_b[:room].decode("utf-8", "ignore").encode("utf-8")
    return base_b + suffix_b


@dataclass(frozen=True)
class ServiceInstance:
    """Brief: The registered advertisement; immutable once created.

    Inputs:
      - instance: human-readable instance label (one DNS label, may contain
        dots and spaces).
      - service_type: e.g. `_airplay._tcp`.
      - domain: e.g. `local.`.
      - hostname: advertised SRV target, e.g. `myhost.local.`.
      - port: TCP port of the service.
      - txt: ordered `key=value` attributes.
      - addresses: IPv4/IPv6 addresses bound to hostname.
      - ttl: TTL for PTR/SRV/TXT.
      - host_ttl: TTL for A/AAAA.

    Outputs:
      - ServiceInstance instance.
    """

    instance: str
    service_type: str
    domain: str
    hostname: str
    port: int
    txt: Tuple[str, ...] = ()
    addresses: Tuple[IPAddress, ...] = ()
    ttl: int = DEFAULT_TTL
    host_ttl: int = DEFAULT_HOST_TTL

    @property
    def service_name(self) -> dns.name.Name:
        return make_name(split_name(self.service_type) + split_name(self.domain))

    @property
    def instance_name(self) -> dns.name.Name:
        return make_name(
            [self.instance.encode("utf-8")]
            + split_name(self.service_type)
            + split_name(self.domain)
        )

    @property
    def host_name(self) -> dns.name.Name:
        return make_name(split_name(self.hostname))

    @property
    def enumeration_name(self) -> dns.name.Name:
        return make_name(split_name(SERVICE_ENUMERATION_PREFIX) + split_name(self.domain))

    def renamed(
        self,
        number: int,
        *,
        base_instance: Optional[str] = None,
        base_hostname: Optional[str] = None,
        instance: bool = True,
        hostname: bool = False,
    ) -> "ServiceInstance":
        """Brief: Return a copy with ` (n)` / `-n` appended to the chosen names.

        Inputs:
          - number: the suffix number (2, 3, ...).
          - base_instance / base_hostname: names to number; default to the
            current values.
          - instance / hostname: which of the two names to change.

        Outputs:
          - ServiceInstance.

        Example:
          >>> si = ServiceInstance("Test-AirPlay", "_airplay._tcp", "local.", "box.local.", 7000)
          >>> si.renamed(2, hostname=True).instance
          'Test-AirPlay (2)'
          >>> si.renamed(2, hostname=True).hostname
          'box-2.local.'
        """

        changes: Dict[str, object] = {}
        if instance:
            base = base_instance if base_instance is not None else self.instance
            changes["instance"] = _numbered_label(base, " (%d)" % number).decode(
                "utf-8"
            )
        if hostname:
            base_host = base_hostname if base_hostname is not None else self.hostname
            labels = split_name(base_host)
            first = _numbered_label(labels[0].decode("utf-8"), "-%d" % number)
            changes["hostname"] = (
                b".".join([first] + labels[1:]).decode("utf-8") + "."
            )
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class RecordSet:
    """Brief: The owned records derived from one ServiceInstance.

    All sets are announced together and withdrawn together.
    """

    enumeration: ResourceRecord
    ptr: ResourceRecord
    srv: ResourceRecord
    txt: ResourceRecord
    addresses: Tuple[ResourceRecord, ...]

    def all(self) -> List[ResourceRecord]:
        return [self.enumeration, self.ptr, self.srv, self.txt] + list(self.addresses)

    def unique(self) -> List[ResourceRecord]:
        """Records this host is authoritative for (everything except the PTRs)."""

        return [rr for rr in self.all() if rr.cache_flush]

    @property
    def unique_names(self) -> List[dns.name.Name]:
        out: List[dns.name.Name] = []
        for rr in self.unique():
            if rr.name not in out:
                out.append(rr.name)
        return out

    def lookup(self, name: dns.name.Name, rdtype: int) -> List[ResourceRecord]:
        """Owned records for name; rdtype ANY matches every type."""

        return [
            rr
            for rr in self.all()
            if rr.name == name and rdtype in (rr.rdtype, dns.rdatatype.ANY)
        ]

    def with_ttl(self, ttl: int) -> List[ResourceRecord]:
        return [rr.with_ttl(ttl) for rr in self.all()]


def build_records(instance: ServiceInstance) -> RecordSet:
    """
    Brief: Derive the DNS-SD record set for a service instance.

    Inputs:
    - instance: ServiceInstance to advertise

    Outputs:
    - RecordSet holding the service-type enumeration PTR, the service PTR,
      SRV, TXT, and one A/AAAA per address. Pure and deterministic.

    Raises:
    - OversizedRecord: label, name or TXT limits are exceeded
    - ValueError: invalid port or TXT key

    Example:
        >>> si = ServiceInstance("Test-AirPlay", "_airplay._tcp", "local.", "box.local.", 7000)
        >>> rs = build_records(si)
        >>> str(rs.srv.name)
        'Test-AirPlay._airplay._tcp.local.'
    """
    if not 1 <= int(instance.port) <= 65535:
        raise ValueError("port must be within 1-65535, got %r" % (instance.port,))

    IN = dns.rdataclass.IN
    service_name = instance.service_name
    instance_name = instance.instance_name
    host_name = instance.host_name
    strings = pack_txt(instance.txt)

    enumeration = ResourceRecord(
        name=instance.enumeration_name,
        rdtype=dns.rdatatype.PTR,
        rdclass=IN,
        ttl=instance.ttl,
        rdata=dns.rdtypes.ANY.PTR.PTR(IN, dns.rdatatype.PTR, service_name),
    )
    ptr = ResourceRecord(
        name=service_name,
        rdtype=dns.rdatatype.PTR,
        rdclass=IN,
        ttl=instance.ttl,
        rdata=dns.rdtypes.ANY.PTR.PTR(IN, dns.rdatatype.PTR, instance_name),
    )
    srv = ResourceRecord(
        name=instance_name,
        rdtype=dns.rdatatype.SRV,
        rdclass=IN,
        ttl=instance.ttl,
        rdata=dns.rdtypes.IN.SRV.SRV(
            IN, dns.rdatatype.SRV, 0, 0, int(instance.port), host_name
        ),
        cache_flush=True,
    )
    txt = ResourceRecord(
        name=instance_name,
        rdtype=dns.rdatatype.TXT,
        rdclass=IN,
        ttl=instance.ttl,
        rdata=dns.rdtypes.ANY.TXT.TXT(IN, dns.rdatatype.TXT, strings),
        cache_flush=True,
    )

    addresses: List[ResourceRecord] = []
    seen = set()
    for addr in instance.addresses:
        ip = ipaddress.ip_address(addr)
        if ip in seen:
            continue
        seen.add(ip)
        if ip.version == 4:
            rdata = dns.rdtypes.IN.A.A(IN, dns.rdatatype.A, str(ip))
            rdtype = dns.rdatatype.A
        else:
            rdata = dns.rdtypes.IN.AAAA.AAAA(IN, dns.rdatatype.AAAA, str(ip))
            rdtype = dns.rdatatype.AAAA
        addresses.append(
            ResourceRecord(
                name=host_name,
                rdtype=rdtype,
                rdclass=IN,
                ttl=instance.host_ttl,
                rdata=rdata,
                cache_flush=True,
            )
        )

    logger.debug(
        "Built record set for %s (%d address records)", instance_name, len(addresses)
    )
    return RecordSet(
        enumeration=enumeration,
        ptr=ptr,
        srv=srv,
        txt=txt,
        addresses=tuple(addresses),
    )
