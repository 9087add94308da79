"""
Backup server - wires configuration, catalog, eviction and synchronizer.

Exposes the operator operations: start the scan loop, list backups and
restore a version.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .catalog import VersionCatalog
from .retention import EvictionManager
from .scan import ScanLoop
from .settings import ServerSettings, load_server_settings
from .sources import RemoteSource
from .storage import LocalStorage, StorageError
from .synchronizer import Synchronizer
from .targets import Target, TargetState
from .transfer import RsyncTransfer


logger = logging.getLogger(__name__)


class TargetNotFoundError(LookupError):
    """Raised when no target has the requested name."""
    pass


class OutputExistsError(FileExistsError):
    """Raised when a restore output path already exists."""
    pass


def parse_timestamp(timestamp) -> int:
    """
    Accept a version timestamp as int or numeric string.

    Raises:
        ValueError: If the value is not a unix timestamp in seconds
    """
    if isinstance(timestamp, int) and not isinstance(timestamp, bool):
        return timestamp
    if isinstance(timestamp, str):
        value = timestamp.strip()
        if value.isascii() and value.isdigit():
            return int(value)
    raise ValueError(f'Invalid timestamp "{timestamp}", the timestamp must be the unix timestamp in seconds.')


class BackupServer:
    """Pull-based backup server for one remote host."""

    def __init__(self, settings: ServerSettings, source: Optional[RemoteSource] = None,
                 storage: Optional[LocalStorage] = None, transfer: Optional[RsyncTransfer] = None):
        """
        Initialize backup server.

        Args:
            settings: Validated server settings
            source: Remote size probe (built from settings if None)
            storage: Destination storage (built from settings if None)
            transfer: rsync runner (built from settings if None)
        """
        self.settings = settings
        self.targets = list(settings.targets)

        self.catalog = VersionCatalog()
        self.storage = storage or LocalStorage(settings.destination)
        self.source = source or RemoteSource(settings.ip, settings.port, settings.user, settings.key)
        self.transfer = transfer or RsyncTransfer(settings.rsync_bin)

        self.eviction = EvictionManager(
            self.targets, self.catalog, self.storage, self.source, auto_remove=settings.auto_remove
        )
        self.synchronizer = Synchronizer(
            self.catalog, self.storage, self.eviction, self.transfer,
            host=settings.ip, port=settings.port, user=settings.user, key=settings.key
        )
        self.scan_loop = ScanLoop(
            self.synchronizer,
            [TargetState(target) for target in self.targets],
            interval_seconds=settings.scan_interval,
            tz=settings.tzinfo,
        )

    @classmethod
    def from_config(cls, path_or_config) -> 'BackupServer':
        """Build a server from a configuration path or dict."""
        return cls(load_server_settings(path_or_config))

    def start(self):
        """
        Run the scan loop in the foreground until stop() is called.

        Raises:
            DiskFullError: If the destination runs out of space
        """
        self.scan_loop.run()

    def stop(self):
        self.scan_loop.stop()

    def fetch_target(self, name: str) -> Target:
        """
        Get a target by name.

        Raises:
            TargetNotFoundError: If no target has that name
        """
        for target in self.targets:
            if target.name == name:
                return target
        raise TargetNotFoundError(f'Unable to find target "{name}".')

    def list_backups(self, target_name: Optional[str] = None) -> Dict[str, List[Path]]:
        """
        List version directories, per target.

        Args:
            target_name: Only list this target

        Returns:
            Dict of target name to version paths, oldest first

        Raises:
            TargetNotFoundError: If target_name is unknown
        """
        targets = self.targets if target_name is None else [self.fetch_target(target_name)]

        backups = {}
        for target in targets:
            backups[target.name] = [
                self.catalog.version_path(target, timestamp)
                for timestamp in self.catalog.list_versions(target)
            ]
        return backups

    def restore_backup(self, target_name: str, timestamp, output=None) -> Path:
        """
        Restore a version by target and timestamp.

        Args:
            target_name: Target name
            timestamp: Version timestamp (unix seconds, int or numeric string)
            output: Path to copy the version to; must not exist

        Returns:
            The output path, or the internal version path when output is None

        Raises:
            ValueError: If the timestamp is not numeric
            TargetNotFoundError: If the target is unknown
            VersionNotFoundError: If the version doesn't exist
            OutputExistsError: If output already exists
            StorageError: If copying fails
        """
        timestamp = parse_timestamp(timestamp)
        target = self.fetch_target(target_name)

        if output is not None:
            output = Path(output).expanduser()
            if output.exists() or output.is_symlink():
                raise OutputExistsError(f'Output path "{output}" already exists.')

        path = self.catalog.resolve(target, timestamp)
        if output is None:
            return path

        try:
            self.storage.copy_tree(path, output)
        except StorageError:
            # Never leave a partial copy that looks like a finished restore
            if output.exists():
                logger.error(f'Restore of "{target.name}@{timestamp}" to "{output}" failed, removing partial output.')
                self.storage.delete_tree(output)
            raise

        logger.info(f'Restored backup "{target.name}@{timestamp}" to "{output}".')
        return output
