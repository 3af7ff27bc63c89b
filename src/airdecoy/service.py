"""Lifecycle controller: wires interfaces, records, transport and responder.

Brief:
  BeaconService.start() selects interfaces, builds the ServiceInstance, opens
  the multicast transport and starts the responder, then waits until the
  responder reaches Responding (or fails). shutdown() drives goodbyes and
  closes the sockets; it is idempotent and bounded in time.

Inputs:
  - BeaconConfig

Outputs:
  - BeaconService
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Any, Callable, List, Optional

from .config.models import BeaconConfig
from .errors import AlreadyShutDown, BeaconError
from .interfaces import Interface, enumerate_interfaces, link_addresses, select_interfaces
from .records import ServiceInstance, build_records, split_name
from .responder import Responder
from .transport import MulticastTransport

logger = logging.getLogger(__name__)

# Fraction of mdns.shutdown_timeout_ms given to goodbyes; the rest closes sockets.
RESPONDER_SHARE = 0.75
# Seconds kept back from the reader joins for logging and returning.
CLOSE_SLACK = 0.05


def resolve_hostname(
    configured: Optional[str],
    domain: str,
    hostname_source: Callable[[], str] = socket.gethostname,
) -> str:
    """
    Brief: Produce the fully qualified SRV target, e.g. `myhost.local.`.

    Inputs:
    - configured: explicit hostname; a bare label gets the domain appended
    - domain: mDNS domain (normally `local.`)
    - hostname_source: returns the system hostname; read once

    Outputs:
    - str: absolute hostname with a trailing dot

    Raises:
    - ValueError: no hostname configured and none available from the system

    Example:
        >>> resolve_hostname(None, "local.", lambda: "box.example.com")
        'box.local.'
        >>> resolve_hostname("den", "local.")
        'den.local.'
    """
    domain_labels = [p.decode("utf-8") for p in split_name(domain)]
    if configured and configured.strip().strip("."):
        text = configured.strip()
        labels = [p for p in text.strip(".").split(".") if p]
        if len(labels) == 1:
            labels += domain_labels
        return ".".join(labels) + "."

    system = (hostname_source() or "").strip()
    first = system.split(".", 1)[0]
    if not first:
        raise ValueError("the system hostname is unavailable; set service.hostname")
    return ".".join([first] + domain_labels) + "."


class BeaconService:
    """
    Brief: Own one advertisement from start to shutdown.

    Inputs:
    - config: BeaconConfig
    - interface_source: returns the candidate Interfaces (psutil by default)
    - transport_factory: builds the MulticastTransport from the selected links
    - responder_factory: builds the Responder
    - hostname_source: returns the system hostname

    Outputs:
    - BeaconService; usable as a context manager.

    Example:
        >>> with BeaconService(config) as beacon:  # doctest: +SKIP
        ...     beacon.wait(stop_event)
    """

    def __init__(
        self,
        config: BeaconConfig,
        *,
        interface_source: Callable[[], List[Interface]] = enumerate_interfaces,
        transport_factory: Callable[..., Any] = MulticastTransport,
        responder_factory: Callable[..., Any] = Responder,
        hostname_source: Callable[[], str] = socket.gethostname,
    ) -> None:
        self.config = config
        self._interface_source = interface_source
        self._transport_factory = transport_factory
        self._responder_factory = responder_factory
        self._hostname_source = hostname_source

        self._lock = threading.Lock()
        self._shut_down = False
        self.instance: Optional[ServiceInstance] = None
        self.transport: Optional[Any] = None
        self.responder: Optional[Any] = None

    @property
    def error(self) -> Optional[BeaconError]:
        """Fatal error reported by the responder (e.g. transport loss)."""

        if self.responder is None:
            return None
        return self.responder.error

    def _build_instance(self, links) -> ServiceInstance:
        svc = self.config.service
        mdns = self.config.mdns
        instance = ServiceInstance(
            instance=svc.instance,
            service_type=svc.type,
            domain=svc.domain,
            hostname=resolve_hostname(svc.hostname, svc.domain, self._hostname_source),
            port=svc.port,
            txt=svc.txt_entries(),
            addresses=link_addresses(links),
            ttl=mdns.ttl,
            host_ttl=mdns.host_ttl,
        )
        # Fail on oversized names or TXT before any socket is opened.
        build_records(instance)
        return instance

    def start(self, wait: bool = True) -> None:
        """
        Brief: Bring the advertisement up.

        Inputs:
        - wait: block until the responder is Responding, fails, or the
          configured startup timeout passes

        Outputs:
        - None

        Raises:
        - NoEligibleInterfaces, OversizedRecord, ValueError: before any socket
          is opened
        - TransportSocketError: no socket could be opened
        - ProbeFailed: the rename cap was reached while probing
        """
        svc = self.config.service
        mdns = self.config.mdns

        links = select_interfaces(
            self._interface_source(),
            svc.interfaces or None,
            ip_version=svc.ip_version,
            include_link_local=svc.include_link_local,
        )
        self.instance = self._build_instance(links)

        transport = self._transport_factory(links, loopback=mdns.multicast_loopback)
        responder = self._responder_factory(
            self.instance,
            transport,
            probe=mdns.probe,
            probe_interval=mdns.probe_interval_ms / 1000.0,
            probe_attempts=mdns.probe_attempts,
            announce_count=mdns.announce_count,
            announce_interval=mdns.announce_interval_ms / 1000.0,
            goodbye_count=mdns.goodbye_count,
            goodbye_interval=mdns.goodbye_interval_ms / 1000.0,
            rate_limit_window=mdns.rate_limit_ms / 1000.0,
            queue_size=mdns.queue_size,
        )
        transport.on_fatal = responder.notify_fatal
        self.transport = transport
        self.responder = responder

        transport.open()
        transport.start(responder.submit)
        responder.start()
        logger.info(
            "Registering %r (%s) on port %d via %d link(s)",
            self.instance.instance,
            self.instance.service_type,
            self.instance.port,
            len(transport.active_links),
        )
        if not wait:
            return

        timeout = mdns.startup_timeout_ms / 1000.0
        try:
            ready = responder.wait_until_ready(timeout or None)
        except BeaconError:
            self.shutdown()
            raise
        if not ready:
            logger.warning("Service not announced after %.1fs; continuing", timeout)

    def wait(self, stop_event: threading.Event, poll_interval: float = 0.5) -> int:
        """
        Brief: Block until stop_event is set or the responder fails.

        Inputs:
        - stop_event: set by signal handlers or the caller
        - poll_interval: seconds between checks

        Outputs:
        - int: 0 when stopped on request, 1 after a fatal error
        """
        while not stop_event.is_set():
            err = self.error
            if err is not None:
                logger.error("Advertisement stopped: %s", err)
                return 1
            stop_event.wait(poll_interval)
        return 0

    def shutdown(self) -> None:
        """Goodbyes, then close sockets. Safe to call more than once."""

        with self._lock:
            if self._shut_down:
                logger.debug("Shutdown already done")
                return
            self._shut_down = True

        # One budget covers goodbyes and socket teardown.
        timeout = self.config.mdns.shutdown_timeout_ms / 1000.0
        deadline = time.monotonic() + timeout
        if self.responder is not None:
            try:
                self.responder.stop(timeout=timeout * RESPONDER_SHARE)
            except AlreadyShutDown:
                pass
        if self.transport is not None:
            remaining = deadline - time.monotonic() - CLOSE_SLACK
            self.transport.close(timeout=max(0.0, remaining))
        logger.info("Shutdown complete")

    def __enter__(self) -> "BeaconService":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
