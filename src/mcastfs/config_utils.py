"""
Configuration loading

Settings come from an optional TOML file and are overridden by command
line flags. Example file:

    [receiver]
    group = "239.255.1.1"
    port = 5000
    interface = "0.0.0.0"
    timeout = 5.0

    [extract]
    output_dir = "$HOME/firmware"
    decompress = true
    compressed_suffixes = [".gz"]
    keep_partial = true
    preserve_attributes = false

    [logging]
    level = "INFO"

Paths support environment variable and ~ expansion.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import toml

from .multicast_receiver import DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)


def expand_path(value: Optional[str]) -> Optional[str]:
    """Expand environment variables and ~ in a configured path"""
    if not value:
        return value
    return os.path.expanduser(os.path.expandvars(value))


@dataclass
class ReceiverConfig:
    """Live multicast reception"""
    group: Optional[str] = None
    port: Optional[int] = None
    interface: str = '0.0.0.0'
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("receiver.timeout must be positive")
        if self.port is not None and not 0 < self.port <= 65535:
            raise ValueError(f"receiver.port {self.port} out of range")


@dataclass
class ExtractConfig:
    """Extraction behaviour"""
    output_dir: Optional[str] = None
    decompress: bool = True
    compressed_suffixes: List[str] = field(default_factory=lambda: ['.gz'])
    keep_partial: bool = True
    preserve_attributes: bool = False

    def __post_init__(self):
        self.output_dir = expand_path(self.output_dir)
        if any(not suffix for suffix in self.compressed_suffixes):
            raise ValueError("extract.compressed_suffixes must not contain empty suffixes")


@dataclass
class AppConfig:
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    extract: ExtractConfig = field(default_factory=ExtractConfig)
    log_level: str = 'INFO'

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'AppConfig':
        """
        Build from a parsed TOML document.

        Raises:
            ValueError: unknown keys or invalid values
        """
        try:
            receiver = ReceiverConfig(**config.get('receiver', {}))
            extract = ExtractConfig(**config.get('extract', {}))
        except TypeError as e:
            raise ValueError(f"Invalid configuration: {e}") from e
        log_level = str(config.get('logging', {}).get('level', 'INFO')).upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise ValueError(f"Unknown log level '{log_level}'")
        return cls(receiver=receiver, extract=extract, log_level=log_level)


def load_config(config_file: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration

    Args:
        config_file: Path to TOML configuration file, or None for defaults

    Returns:
        AppConfig

    Raises:
        FileNotFoundError: config_file does not exist
        ValueError: file is not valid TOML or holds invalid values
    """
    if config_file is None:
        return AppConfig()

    config_file = Path(expand_path(str(config_file)))
    try:
        with open(config_file, 'r') as f:
            config = toml.load(f)
    except toml.TomlDecodeError as e:
        raise ValueError(f"{config_file}: {e}") from e

    logger.debug(f"Loaded configuration from {config_file}")
    return AppConfig.from_dict(config)
