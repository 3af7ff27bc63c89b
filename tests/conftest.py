"""
Brief: Global pytest configuration: src/ on sys.path, a per-test 10s timeout,
and shared fakes for sockets, timers and transports.

Inputs:
  - None

Outputs:
  - None
"""

import ipaddress
import logging
import os
import signal
import socket
import sys
from typing import Any, Callable, List, Tuple

import pytest

# Ensure 'src' is on sys.path so the 'airdecoy' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from airdecoy.interfaces import Interface, Link  # noqa: E402
from airdecoy.records import DEFAULT_AIRPLAY_TXT, ServiceInstance  # noqa: E402
from airdecoy.transport import Provenance  # noqa: E402


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Brief: Undo init_logging() side effects between tests."""

    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)


class FakeScheduler:
    """Records call_later() requests; tests fire them explicitly."""

    def __init__(self) -> None:
        self.calls: List[Tuple[float, Callable[..., Any], tuple]] = []
        self.cancelled = False

    def call_later(self, delay, callback, *args):
        if not self.cancelled:
            self.calls.append((delay, callback, args))

    def cancel_all(self):
        self.cancelled = True
        self.calls = []

    def fire_all(self) -> int:
        """Run every pending callback once (callbacks may schedule more)."""

        pending, self.calls = self.calls, []
        for _delay, cb, args in pending:
            cb(*args)
        return len(pending)


class FakeTransport:
    """Captures outgoing datagrams instead of touching sockets."""

    def __init__(self, links=None) -> None:
        self.links = list(links or [])
        self.multicast: List[bytes] = []
        self.sent: List[Tuple[bytes, Provenance, bool, Any]] = []
        self.closed = False
        self.on_fatal = None
        self.deliver = None
        self.opened = False

    def open(self):
        self.opened = True

    def start(self, deliver):
        self.deliver = deliver

    @property
    def active_links(self):
        return [] if self.closed else list(self.links)

    def send_multicast(self, data):
        if self.closed:
            return 0
        self.multicast.append(bytes(data))
        return max(1, len(self.links))

    def send_to(self, data, provenance, *, unicast=False, port=None):
        if self.closed:
            return False
        self.sent.append((bytes(data), provenance, unicast, port))
        return True

    def close(self, timeout=1.0):
        self.closed = True


def make_interface(name="eth0", index=2, addresses=("192.0.2.10",), **kw) -> Interface:
    return Interface(
        name=name,
        index=index,
        up=kw.get("up", True),
        loopback=kw.get("loopback", False),
        multicast=kw.get("multicast", True),
        addresses=tuple(ipaddress.ip_address(a) for a in addresses),
    )


def make_link(name="eth0", index=2, family=socket.AF_INET, addresses=("192.0.2.10",)) -> Link:
    iface = make_interface(name, index, addresses)
    return Link(interface=iface, family=family, addresses=iface.addresses)


def make_provenance(
    source="192.0.2.50", port=5353, name="eth0", index=2, family=socket.AF_INET
) -> Provenance:
    return Provenance(
        source_address=source,
        source_port=port,
        interface_name=name,
        interface_index=index,
        family=family,
    )


def make_instance(**overrides) -> ServiceInstance:
    values = dict(
        instance="Test-AirPlay",
        service_type="_airplay._tcp",
        domain="local.",
        hostname="box.local.",
        port=7000,
        txt=DEFAULT_AIRPLAY_TXT,
        addresses=(
            ipaddress.ip_address("192.0.2.10"),
            ipaddress.ip_address("fe80::10"),
        ),
    )
    values.update(overrides)
    return ServiceInstance(**values)


@pytest.fixture
def fake_scheduler():
    return FakeScheduler()


@pytest.fixture
def fake_transport():
    return FakeTransport([make_link()])


@pytest.fixture
def instance():
    return make_instance()


@pytest.fixture
def factories():
    """Brief: Expose the builder helpers to test modules (tests/ is not a package)."""

    class _F:
        interface = staticmethod(make_interface)
        link = staticmethod(make_link)
        provenance = staticmethod(make_provenance)
        instance = staticmethod(make_instance)
        scheduler = FakeScheduler
        transport = FakeTransport

    return _F
