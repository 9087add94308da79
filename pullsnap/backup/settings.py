"""
Server configuration loading.

The server configuration is a JSON object, usually read from
/etc/pullsnap/config.json:

    {
        "ip": "10.0.0.2",
        "port": 22,
        "user": "backup",
        "key": "~/.ssh/id_backup",
        "destination": "/mnt/backups",
        "auto_remove": false,
        "targets": [
            {"source": "/var/www", "interval": "day", "exclude": ["cache/"]}
        ]
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .targets import ConfigurationError, Target, normalize_targets

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = '/etc/pullsnap/config.json'

# key: (accepted types, default); a default of REQUIRED marks a mandatory key
REQUIRED = object()
SERVER_KEYS = {
    'name': ((str,), 'pullsnap'),
    'ip': ((str,), REQUIRED),
    'port': ((int,), 22),
    'user': ((str,), REQUIRED),
    'key': ((str,), REQUIRED),
    'destination': ((str,), REQUIRED),
    'targets': ((list,), REQUIRED),
    'target_source_may_exist': ((bool,), False),
    'auto_remove': ((bool,), False),
    'log_level': ((int,), 1),
    'timezone': ((str, type(None)), None),
    'rsync_bin': ((str, type(None)), None),
    'scan_interval': ((int, float), 60),
}

# Accepted from older configurations; logs always go to the app LOG_DIR
IGNORED_KEYS = ('log_path', 'error_path')


@dataclass
class ServerSettings:
    """Validated server-level parameters plus the normalized targets."""

    ip: str
    user: str
    key: str
    destination: Path
    targets: List[Target] = field(default_factory=list)
    name: str = 'pullsnap'
    port: int = 22
    auto_remove: bool = False
    log_level: int = 1
    timezone: Optional[str] = None
    rsync_bin: Optional[str] = None
    scan_interval: float = 60
    config_path: Optional[str] = None

    @property
    def tzinfo(self) -> Optional[ZoneInfo]:
        return ZoneInfo(self.timezone) if self.timezone else None


def _validate(config: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(config) - set(SERVER_KEYS) - set(IGNORED_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown configuration key(s): {', '.join(sorted(unknown))}")

    for key in IGNORED_KEYS:
        if key in config:
            logger.warning(f'Ignoring configuration key "{key}", logs are written to LOG_DIR.')

    values = {}
    for key, (types, default) in SERVER_KEYS.items():
        if key not in config:
            if default is REQUIRED:
                raise ConfigurationError(f'Missing required configuration key "{key}".')
            values[key] = default
            continue

        value = config[key]
        # bool is an int subclass but never a valid port or level
        if isinstance(value, bool) and bool not in types:
            raise ConfigurationError(f'Invalid type for configuration key "{key}".')
        if not isinstance(value, types):
            raise ConfigurationError(f'Invalid type for configuration key "{key}".')
        values[key] = value

    if not 0 < values['port'] < 65536:
        raise ConfigurationError(f"Invalid port {values['port']}.")
    if values['scan_interval'] <= 0:
        raise ConfigurationError('Configuration key "scan_interval" must be positive.')
    if values['timezone']:
        try:
            ZoneInfo(values['timezone'])
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown timezone \"{values['timezone']}\".")

    return values


def load_server_settings(path_or_config) -> ServerSettings:
    """
    Load and validate the server configuration.

    Creates the destination directory and every target directory.

    Args:
        path_or_config: Path to a JSON file, or an already parsed dict

    Returns:
        ServerSettings

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    config_path = None

    if isinstance(path_or_config, (str, os.PathLike)):
        config_path = str(path_or_config)
        if not os.path.exists(config_path):
            raise ConfigurationError(f'Path "{config_path}" does not exist.')
        try:
            with open(config_path, 'r') as f:
                path_or_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f'Failed to read configuration "{config_path}": {e}')

    if not isinstance(path_or_config, dict):
        raise ConfigurationError(
            'Invalid configuration, expected a path or a JSON object.'
        )

    values = _validate(path_or_config)

    destination = Path(values['destination']).expanduser()
    try:
        destination.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f'Failed to create destination "{destination}": {e}')

    targets = normalize_targets(
        values['targets'], destination, allow_local_source=values['target_source_may_exist']
    )

    return ServerSettings(
        ip=values['ip'],
        user=values['user'],
        key=str(Path(values['key']).expanduser()),
        destination=destination,
        targets=targets,
        name=values['name'],
        port=values['port'],
        auto_remove=values['auto_remove'],
        log_level=values['log_level'],
        timezone=values['timezone'],
        rsync_bin=values['rsync_bin'],
        scan_interval=values['scan_interval'],
        config_path=config_path,
    )
