from .config_parser import apply_cli_overrides, build_config, load_config, read_config_file
from .config_schema import get_default_schema_path, validate_config
from .logging_config import init_logging
from .models import BeaconConfig, MdnsConfig, ServiceConfig

__all__ = [
    "BeaconConfig",
    "MdnsConfig",
    "ServiceConfig",
    "apply_cli_overrides",
    "build_config",
    "get_default_schema_path",
    "init_logging",
    "load_config",
    "read_config_file",
    "validate_config",
]
