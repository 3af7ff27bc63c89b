from __future__ import annotations

from typing import Optional


class BeaconError(Exception):
    """Brief: Base class for every error raised by the advertiser core."""


class NoEligibleInterfaces(BeaconError):
    """
    Brief: No network interface qualifies for multicast advertisement.

    Inputs:
    - message: description, usually naming the filters that were applied

    Outputs:
    - Exception instance (fatal at startup)
    """

    pass


class ProbeFailed(BeaconError):
    """
    Brief: Probing kept finding conflicts until the rename cap was reached.

    Inputs:
    - message: description including the last name tried

    Outputs:
    - Exception instance (fatal at startup)
    """

    pass


class TransportSocketError(BeaconError):
    """
    Brief: A multicast socket failed.

    Inputs:
    - message: description
    - link: optional human-readable label of the (interface, family) pair

    Outputs:
    - Exception instance. Isolated to one socket unless no socket remains.
    """

    def __init__(self, message: str, link: Optional[str] = None) -> None:
        super().__init__(message)
        self.link = link


class MalformedPacket(BeaconError):
    """Brief: An inbound datagram could not be decoded as a DNS message."""

    pass


class OversizedRecord(BeaconError):
    """Brief: A name, label, TXT entry or message exceeds its wire limit."""

    pass


class AlreadyShutDown(BeaconError):
    """Brief: Shutdown was requested twice; callers treat this as a no-op."""

    pass
