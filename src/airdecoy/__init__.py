"""airdecoy package: advertise a stand-in AirPlay receiver over mDNS/DNS-SD."""

__version__ = "0.1.0"
