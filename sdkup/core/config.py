"""
Central configuration for sdkup.

Settings are read from a plain key=value file, one setting per line:
    sdk_root=/opt/android-sdk
    repository_url=https://dl.example.org/sdk/
    cache_dir=~/.cache/sdkup
    force_http=false
    channel=stable
    # Comments start with #

Lookup order for the file:
    1. Explicit path (--config)
    2. $SDKUP_CONFIG
    3. ~/.config/sdkup/sdkup.conf

The updater never writes this file.

Structure under the SDK root:
    <sdk_root>/.sdkup/packages.db     - Installed-package registry
    <sdk_root>/.sdkup/staging/        - Extracted archives awaiting commit
    <sdk_root>/<path with ; -> />     - Installed package trees
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SDKUP_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "sdkup" / "sdkup.conf"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "sdkup"
DEFAULT_SDK_ROOT = Path.home() / "sdk"

# Registry and staging live next to the packages they describe
STATE_DIR_NAME = ".sdkup"
REGISTRY_FILE = "packages.db"
STAGING_DIR_NAME = "staging"

DEFAULT_INDEX_NAME = "repository.json"

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


class Channel(Enum):
    """Release channels, from most to least stable."""
    STABLE = 0
    BETA = 1
    DEV = 2
    CANARY = 3

    @classmethod
    def parse(cls, value) -> 'Channel':
        """Accept a channel name ('beta') or number ('1')."""
        if isinstance(value, Channel):
            return value
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        try:
            return cls[text.upper()]
        except KeyError:
            raise ValueError(f"Unknown channel: {value!r}") from None


@dataclass(frozen=True)
class ClientSettings:
    """Per-job settings handed to the repository client.

    A fresh value is built for each query or install job.
    """
    force_http: bool = False
    channel: Channel = Channel.STABLE


def get_state_dir(sdk_root: Path) -> Path:
    """Directory holding the registry and staging area of an SDK root."""
    return Path(sdk_root) / STATE_DIR_NAME


def get_registry_path(sdk_root: Path) -> Path:
    return get_state_dir(sdk_root) / REGISTRY_FILE


def get_staging_dir(sdk_root: Path) -> Path:
    return get_state_dir(sdk_root) / STAGING_DIR_NAME


def _read_config_file(path: Path) -> dict:
    """Read a key=value config file.

    Returns:
        Dict with config values (empty if the file doesn't exist)
    """
    if not path.exists():
        return {}

    config = {}
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue
                if '=' in line:
                    key, value = line.split('=', 1)
                    config[key.strip()] = value.strip()
    except OSError as e:
        logger.warning(f"Could not read config file {path}: {e}")
        return {}

    return config


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class UpdaterConfig:
    """Resolved updater configuration."""
    sdk_root: Path = DEFAULT_SDK_ROOT
    repository_url: str = ""
    cache_dir: Path = DEFAULT_CACHE_DIR
    force_http: bool = False
    channel: Channel = Channel.STABLE
    source: Optional[Path] = field(default=None, compare=False)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> 'UpdaterConfig':
        """Load configuration from path, $SDKUP_CONFIG or the default file."""
        if path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
        path = Path(path).expanduser()

        values = _read_config_file(path)
        config = cls(source=path if values else None)

        if 'sdk_root' in values:
            config.sdk_root = Path(values['sdk_root']).expanduser()
        if 'repository_url' in values:
            config.repository_url = values['repository_url']
        if 'cache_dir' in values:
            config.cache_dir = Path(values['cache_dir']).expanduser()
        if 'force_http' in values:
            config.force_http = _parse_bool(values['force_http'])
        if 'channel' in values:
            try:
                config.channel = Channel.parse(values['channel'])
            except ValueError as e:
                logger.warning(f"{path}: {e}, using {config.channel.name.lower()}")

        return config

    def client_settings(self) -> ClientSettings:
        """Build the settings value for one job."""
        return ClientSettings(force_http=self.force_http, channel=self.channel)
