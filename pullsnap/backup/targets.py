"""
Backup target model and normalizer.

A target is one remote source directory (or file) pulled into its own
directory under the backup destination. Normalization validates the raw
configuration, applies defaults and derives the scheduling parameters:

- cadence_seconds: wall-clock interval between two successful syncs
- bucket_start(): truncation of a point in time to the start of its interval,
  used to name versions
"""

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple


logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when a target or server configuration is invalid."""
    pass


# Seconds per interval unit. Month and year are fixed approximations
# (30.5 and 365 days), not calendar arithmetic.
INTERVAL_SECONDS = {
    'minute': 60,
    'hour': 3600,
    'day': 3600 * 24,
    'week': 3600 * 24 * 7,
    'month': int(3600 * 24 * 30.5),
    'year': 3600 * 24 * 365,
}

INVALID_INTERVAL = (
    'Invalid value "{interval}" for attribute "interval", the valid values are '
    '"minute", "hour", "day", "week", "month" or "year".'
)

WEEK_STARTS = ('sunday', 'monday')

TARGET_KEYS = {
    'name', 'source', 'interval', 'frequency', 'exclude', 'delete',
    'directory', 'week_start',
}


def cadence_for(interval: str, frequency: int) -> int:
    """
    Get the number of seconds between two syncs.

    Args:
        interval: One of minute, hour, day, week, month, year
        frequency: Positive multiplier of the interval

    Returns:
        Cadence in seconds

    Raises:
        ConfigurationError: If the interval is unknown
    """
    try:
        return INTERVAL_SECONDS[interval] * frequency
    except KeyError:
        raise ConfigurationError(INVALID_INTERVAL.format(interval=interval))


def bucket_start(moment: datetime, interval: str, week_start: str = 'sunday') -> int:
    """
    Truncate a point in time down to the start of its enclosing interval.

    Truncation happens in the timezone of ``moment``; naive datetimes are
    interpreted as local time.

    Args:
        moment: Point in time
        interval: One of minute, hour, day, week, month, year
        week_start: First day of the week for the week interval (sunday/monday)

    Returns:
        Bucket start as integer unix seconds
    """
    if interval == 'minute':
        start = moment.replace(second=0, microsecond=0)
    elif interval == 'hour':
        start = moment.replace(minute=0, second=0, microsecond=0)
    elif interval == 'day':
        start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    elif interval == 'week':
        midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        # weekday(): monday == 0, sunday == 6
        offset = 1 if week_start == 'sunday' else 0
        start = midnight - timedelta(days=(midnight.weekday() + offset) % 7)
    elif interval == 'month':
        start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    elif interval == 'year':
        start = moment.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        raise ConfigurationError(f'Invalid interval "{interval}"')

    return int(start.timestamp())


@dataclass(frozen=True)
class Target:
    """A validated backup target."""

    name: str
    source_path: str
    local_root: Path
    is_directory: bool = True
    interval: str = 'day'
    frequency: int = 1
    exclude_patterns: Tuple[str, ...] = ()
    delete_on_remote_removal: bool = False
    week_start: str = 'sunday'

    @property
    def cadence_seconds(self) -> int:
        return cadence_for(self.interval, self.frequency)

    def bucket_start(self, moment: datetime) -> int:
        return bucket_start(moment, self.interval, self.week_start)


@dataclass(frozen=True)
class TargetState:
    """
    Scheduling state of a target, threaded through the scan loop.

    ``next_due_at`` is unix seconds, or None until the first successful sync.
    """

    target: Target
    next_due_at: Optional[float] = field(default=None)

    def is_due(self, now: float) -> bool:
        return self.next_due_at is None or now > self.next_due_at

    def scheduled(self, now: float) -> 'TargetState':
        return replace(self, next_due_at=now + self.target.cadence_seconds)


def normalize_source(source: str, is_directory: bool) -> str:
    """Strip trailing slashes, then suffix directories with a single slash."""
    source = source.rstrip('/')
    if is_directory:
        source += '/'
    return source


def _default_name(source: str) -> str:
    stripped = source.rstrip('/')
    return os.path.basename(stripped) or stripped


def normalize_target(raw: Dict[str, Any], destination: Path, allow_local_source: bool = False) -> Target:
    """
    Validate one raw target definition and build a Target.

    Creates the target's local root directory if it does not exist yet.

    Args:
        raw: Raw target configuration dict
        destination: Backup root directory
        allow_local_source: Skip the guard against sources that exist locally

    Returns:
        Target instance

    Raises:
        ConfigurationError: If the definition is invalid
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(
            'Invalid target item type for parameter "targets", the valid type is "object".'
        )

    unknown = set(raw) - TARGET_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown target attribute(s): {', '.join(sorted(unknown))}")

    source = raw.get('source')
    if not isinstance(source, str) or not source.strip('/'):
        raise ConfigurationError('Invalid target item, attribute "source" must be defined.')

    if not allow_local_source and os.path.exists(source):
        raise ConfigurationError(
            f'The target remote source "{source}" also exists on the local host, this attribute '
            f'is meant for the source path on the remote server. If that is indeed the case, '
            f'define parameter "target_source_may_exist" as true.'
        )

    name = raw.get('name')
    if name is None:
        name = _default_name(source)
    if not isinstance(name, str) or not name or name in ('.', '..') or '/' in name:
        raise ConfigurationError(f'Invalid target name "{name}" for source "{source}".')

    interval = raw.get('interval')
    if interval is None:
        interval = 'day'
        logger.info(f'Defining default backup interval "day" for target "{source}".')
    if not isinstance(interval, str) or interval not in INTERVAL_SECONDS:
        raise ConfigurationError(INVALID_INTERVAL.format(interval=interval))

    frequency = raw.get('frequency')
    if frequency is None:
        frequency = 1
        logger.info(f'Defining default backup frequency "1" for target "{source}".')
    if isinstance(frequency, bool) or not isinstance(frequency, int) or frequency < 1:
        raise ConfigurationError(
            f'Invalid frequency "{frequency}" for target "{name}", it must be a positive integer.'
        )

    is_directory = raw.get('directory', True)
    delete = raw.get('delete', False)
    for key, value in (('directory', is_directory), ('delete', delete)):
        if not isinstance(value, bool):
            raise ConfigurationError(f'Attribute "{key}" of target "{name}" must be a boolean.')

    exclude = raw.get('exclude', [])
    if not isinstance(exclude, list) or not all(isinstance(item, str) for item in exclude):
        raise ConfigurationError(f'Attribute "exclude" of target "{name}" must be a list of strings.')

    week_start = raw.get('week_start', 'sunday')
    if week_start not in WEEK_STARTS:
        raise ConfigurationError(
            f'Invalid week_start "{week_start}" for target "{name}", use "sunday" or "monday".'
        )

    local_root = Path(destination) / name
    try:
        local_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(f'Failed to create backup directory {local_root}: {e}')

    return Target(
        name=name,
        source_path=normalize_source(source, is_directory),
        local_root=local_root,
        is_directory=is_directory,
        interval=interval,
        frequency=frequency,
        exclude_patterns=tuple(exclude),
        delete_on_remote_removal=delete,
        week_start=week_start,
    )


def normalize_targets(raw_targets: Iterable[Dict[str, Any]], destination: Path,
                      allow_local_source: bool = False) -> List[Target]:
    """
    Validate all target definitions, keeping their configured order.

    Raises:
        ConfigurationError: On the first invalid definition or duplicate name
    """
    if not isinstance(raw_targets, list):
        raise ConfigurationError('Invalid type for parameter "targets", the valid type is "array".')

    targets = []
    names = set()
    for raw in raw_targets:
        target = normalize_target(raw, destination, allow_local_source)
        if target.name in names:
            raise ConfigurationError(
                f'Another target already has the name "{target.name}", define a unique '
                f'name through attribute "name".'
            )
        names.add(target.name)
        targets.append(target)

    return targets
