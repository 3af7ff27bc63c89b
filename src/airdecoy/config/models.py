"""Typed configuration models.

Brief:
  The JSON Schema catches structural mistakes early with readable paths; these
  pydantic models then give the rest of the package typed, defaulted values.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..records import (
    DEFAULT_AIRPLAY_TXT,
    DEFAULT_DOMAIN,
    DEFAULT_HOST_TTL,
    DEFAULT_SERVICE_TYPE,
    DEFAULT_TTL,
    normalize_txt,
)


class ServiceConfig(BaseModel):
    """Brief: The advertised service.

    Inputs:
      - instance: human-readable instance label (required).
      - type: service type, default `_airplay._tcp`.
      - domain: default `local.`.
      - port: TCP port of the service, 1-65535 (required).
      - txt: ordered `key=value` list or ordered mapping. When omitted for the
        `_airplay._tcp` type, the stock AirPlay attribute set is used.
      - interfaces: explicit interface names; empty means all eligible.
      - hostname: SRV target override; default is the local hostname.
      - ip_version: `all`, `v4` or `v6`.
      - include_link_local: advertise and serve link-local addresses.

    Outputs:
      - ServiceConfig instance.
    """

    model_config = ConfigDict(extra="ignore")

    instance: str = Field(min_length=1)
    type: str = Field(default=DEFAULT_SERVICE_TYPE, min_length=1)
    domain: str = Field(default=DEFAULT_DOMAIN, min_length=1)
    port: int = Field(ge=1, le=65535)
    txt: Optional[Union[List[str], Dict[str, Optional[str]]]] = None
    interfaces: List[str] = Field(default_factory=list)
    hostname: Optional[str] = None
    ip_version: Literal["all", "v4", "v6"] = "all"
    include_link_local: bool = True

    @field_validator("instance")
    @classmethod
    def _instance_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("instance must not be blank")
        return v

    @field_validator("txt", mode="before")
    @classmethod
    def _stringify_txt(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): (None if val is None else str(val)) for k, val in v.items()}
        if isinstance(v, list):
            return [str(item) for item in v]
        return v

    def txt_entries(self) -> Tuple[str, ...]:
        """Ordered `key=value` entries, defaulting to the AirPlay set."""

        if self.txt is None:
            if self.type.strip(".") == DEFAULT_SERVICE_TYPE:
                return DEFAULT_AIRPLAY_TXT
            return ()
        return normalize_txt(self.txt)


class MdnsConfig(BaseModel):
    """Brief: Protocol timing and sizing knobs; durations are milliseconds."""

    model_config = ConfigDict(extra="ignore")

    probe: bool = True
    probe_interval_ms: int = Field(default=250, ge=1)
    probe_attempts: int = Field(default=10, ge=1)
    announce_count: int = Field(default=2, ge=1)
    announce_interval_ms: int = Field(default=1000, ge=1)
    goodbye_count: int = Field(default=2, ge=1)
    goodbye_interval_ms: int = Field(default=250, ge=0)
    ttl: int = Field(default=DEFAULT_TTL, ge=1)
    host_ttl: int = Field(default=DEFAULT_HOST_TTL, ge=1)
    multicast_loopback: bool = False
    queue_size: int = Field(default=256, ge=1)
    rate_limit_ms: int = Field(default=1000, ge=1)
    startup_timeout_ms: int = Field(default=10000, ge=0)
    shutdown_timeout_ms: int = Field(default=2000, ge=0)


class BeaconConfig(BaseModel):
    """Brief: Whole-process configuration: service, mdns and logging blocks."""

    model_config = ConfigDict(extra="ignore")

    service: ServiceConfig
    mdns: MdnsConfig = Field(default_factory=MdnsConfig)
    logging: Dict[str, Any] = Field(default_factory=dict)
