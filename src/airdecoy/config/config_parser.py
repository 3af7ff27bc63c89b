"""Configuration parsing helpers used by the CLI entrypoint.

Brief:
  This module centralizes:
    - reading YAML config files
    - merging CLI overrides into the parsed mapping
    - JSON Schema validation (validate_config)
    - building the typed BeaconConfig

Inputs:
  - YAML config paths and argparse namespaces

Outputs:
  - Validated BeaconConfig instances
"""

from __future__ import annotations

import argparse
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from .config_schema import validate_config
from .models import BeaconConfig


def read_config_file(config_path: str) -> Dict[str, Any]:
    """Brief: Read a YAML config file into a mapping.

    Inputs:
      - config_path: Path to the YAML configuration file.

    Outputs:
      - dict: Parsed configuration mapping (empty for an empty file).

    Raises:
      - OSError: The file cannot be read.
      - ValueError: The YAML is invalid or its root is not a mapping.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError(f"Configuration root in {config_path} must be a mapping")
    return cfg


def apply_cli_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Brief: Merge command-line overrides into the parsed config (in-place).

    Inputs:
      - cfg: Parsed configuration mapping.
      - args: Namespace with optional instance, port, hostname, interfaces,
        service_type, no_probe and log_level attributes.

    Outputs:
      - dict: The same mapping, for chaining.

    Example:
      >>> ns = argparse.Namespace(instance="Den", port=7000)
      >>> apply_cli_overrides({}, ns)["service"]
      {'instance': 'Den', 'port': 7000}
    """

    overrides = {
        "instance": getattr(args, "instance", None),
        "port": getattr(args, "port", None),
        "hostname": getattr(args, "hostname", None),
        "type": getattr(args, "service_type", None),
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    interfaces = getattr(args, "interfaces", None)
    if interfaces:
        overrides["interfaces"] = list(interfaces)

    service = cfg.get("service")
    if service is None:
        service = {}
    # A non-mapping service block is left alone for the schema to report.
    if overrides and isinstance(service, dict):
        service.update(overrides)
        cfg["service"] = service

    if getattr(args, "no_probe", False):
        mdns = cfg.get("mdns")
        if not isinstance(mdns, dict):
            mdns = {}
        mdns["probe"] = False
        cfg["mdns"] = mdns

    log_level = getattr(args, "log_level", None)
    if log_level:
        logging_cfg = cfg.get("logging")
        if not isinstance(logging_cfg, dict):
            logging_cfg = {}
        logging_cfg["level"] = log_level
        cfg["logging"] = logging_cfg
    return cfg


def build_config(cfg: Dict[str, Any]) -> BeaconConfig:
    """Brief: Build the typed config, folding pydantic errors into ValueError."""

    try:
        return BeaconConfig.model_validate(cfg)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def load_config(
    args: argparse.Namespace,
    *,
    unknown_keys: str = "warn",
) -> BeaconConfig:
    """
    Brief: Read the optional config file, apply CLI overrides, validate, build.

    Inputs:
    - args: parsed CLI namespace; `args.config` may be None
    - unknown_keys: JSON Schema policy for unknown keys

    Outputs:
    - BeaconConfig

    Raises:
    - OSError: the config file cannot be read
    - ValueError: the configuration is invalid
    """
    config_path: Optional[str] = getattr(args, "config", None)
    cfg: Dict[str, Any] = read_config_file(config_path) if config_path else {}
    apply_cli_overrides(cfg, args)
    validate_config(
        cfg,
        config_path=config_path or "<command line>",
        unknown_keys=unknown_keys,
    )
    return build_config(cfg)
