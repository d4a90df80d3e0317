"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv

from dropmo.transfer.chunker import MAX_CHUNK_SIZE


@dataclass
class Config:
    """
    dropmo Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (DROPMO_*)
    2. Config file (config.json)
    3. Default values
    """
    # Rendezvous service
    host: str = '0.0.0.0'
    signaling_port: int = 3000
    signaling_url: str = 'ws://localhost:3000/ws'

    # Peer
    identifier: Optional[str] = None  # Generated if not provided
    channel_port: int = 8469
    advertise_host: str = '127.0.0.1'

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Transfer
    chunk_size: int = MAX_CHUNK_SIZE  # 64KB

    # Timeouts (seconds)
    channel_open_timeout: float = 10.0
    ready_timeout: float = 30.0  # 0 waits forever

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.chunk_size = max(1, min(int(self.chunk_size), MAX_CHUNK_SIZE))

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Rendezvous service
        config.host = os.getenv('DROPMO_HOST', config.host)
        config.signaling_port = int(os.getenv('DROPMO_SIGNALING_PORT', config.signaling_port))
        config.signaling_url = os.getenv('DROPMO_SIGNALING_URL', config.signaling_url)

        # Peer
        config.identifier = os.getenv('DROPMO_IDENTIFIER') or config.identifier
        config.channel_port = int(os.getenv('DROPMO_CHANNEL_PORT', config.channel_port))
        config.advertise_host = os.getenv('DROPMO_ADVERTISE_HOST', config.advertise_host)

        # Storage
        download_dir = os.getenv('DROPMO_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Transfer
        config.chunk_size = min(
            int(os.getenv('DROPMO_CHUNK_SIZE', config.chunk_size)), MAX_CHUNK_SIZE
        )

        # Timeouts
        config.channel_open_timeout = float(
            os.getenv('DROPMO_CHANNEL_OPEN_TIMEOUT', config.channel_open_timeout)
        )
        config.ready_timeout = float(os.getenv('DROPMO_READY_TIMEOUT', config.ready_timeout))

        # Logging
        config.log_level = os.getenv('DROPMO_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Rendezvous service
        config.host = data.get('host', config.host)
        config.signaling_port = data.get('signaling_port', config.signaling_port)
        config.signaling_url = data.get('signaling_url', config.signaling_url)

        # Peer
        config.identifier = data.get('identifier', config.identifier)
        config.channel_port = data.get('channel_port', config.channel_port)
        config.advertise_host = data.get('advertise_host', config.advertise_host)

        # Storage
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # Transfer
        config.chunk_size = min(data.get('chunk_size', config.chunk_size), MAX_CHUNK_SIZE)

        # Timeouts
        config.channel_open_timeout = data.get(
            'channel_open_timeout', config.channel_open_timeout
        )
        config.ready_timeout = data.get('ready_timeout', config.ready_timeout)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'signaling_port': self.signaling_port,
            'signaling_url': self.signaling_url,
            'identifier': self.identifier,
            'channel_port': self.channel_port,
            'advertise_host': self.advertise_host,
            'download_dir': str(self.download_dir),
            'chunk_size': self.chunk_size,
            'channel_open_timeout': self.channel_open_timeout,
            'ready_timeout': self.ready_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in ['host', 'signaling_port', 'signaling_url', 'identifier',
                'channel_port', 'advertise_host', 'download_dir', 'chunk_size',
                'channel_open_timeout', 'ready_timeout', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "signaling_port": 3000,
  "signaling_url": "ws://rendezvous.local:3000/ws",
  "identifier": "alice",
  "channel_port": 8469,
  "advertise_host": "192.168.1.20",
  "download_dir": "./downloads",
  "chunk_size": 65536,
  "ready_timeout": 30,
  "log_level": "INFO"
}
"""


if __name__ == "__main__":
    # Print example config
    print("Example configuration file (config.json):")
    print(EXAMPLE_CONFIG)
