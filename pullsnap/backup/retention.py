"""
Disk space eviction for the backup destination.

Before a target is synced the destination must have at least as much free
space as the target occupies on the remote host. When it doesn't and
automatic removal is enabled, the oldest versions across all targets are
deleted one at a time until enough space is free.

Size accounting is approximate: hard-linked files shared between versions
free no space when one version is removed, so more versions may be removed
than strictly necessary.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from .catalog import VersionCatalog
from .sources import RemoteSource
from .storage import LocalStorage
from .targets import Target


logger = logging.getLogger(__name__)

GB = 1024 ** 3


class DiskFullError(Exception):
    """Raised when the destination can't hold the next sync. Fatal for the scan loop."""
    pass


@dataclass
class EvictionReport:
    """Outcome of one space check."""

    required: int
    available_before: int
    available_after: int
    removed: List[Tuple[str, int]] = field(default_factory=list)


class EvictionManager:
    """
    Frees destination space by deleting the globally oldest versions.

    Automatic removal is opt-in: with it disabled a shortage is fatal.
    """

    def __init__(self, targets: Sequence[Target], catalog: VersionCatalog,
                 storage: LocalStorage, source: RemoteSource, auto_remove: bool = False):
        """
        Initialize eviction manager.

        Args:
            targets: All configured targets, in configured order
            catalog: Version catalog
            storage: Destination storage handler
            source: Remote source used to measure targets
            auto_remove: Allow deleting old versions to free space
        """
        self.targets = list(targets)
        self.catalog = catalog
        self.storage = storage
        self.source = source
        self.auto_remove = auto_remove

    def reserve_space(self, target: Target) -> EvictionReport:
        """
        Ensure the destination can hold a full copy of the target.

        Args:
            target: Target about to be synced

        Returns:
            EvictionReport

        Raises:
            SourceError: If the remote size can't be determined
            DiskFullError: If enough space can't be freed
        """
        required = self.source.probe_size(target)
        available = self.storage.available_bytes()

        if required <= available:
            logger.info(
                f"Not removing old backups, still {available / GB:.2f}GB available free space."
            )
            return EvictionReport(required, available, available)

        if not self.auto_remove:
            raise DiskFullError(
                f'Disk is full: target "{target.name}" requires {required} bytes but only '
                f'{available} bytes are available and automatic removal is disabled.'
            )

        return self.evict(target, required, available)

    def evict(self, target: Target, required: int, available: int) -> EvictionReport:
        """
        Delete oldest versions of all targets until ``required`` bytes are free.

        The candidate list is built and sorted before anything is deleted.

        Raises:
            DiskFullError: If all versions are gone and space is still short
        """
        report = EvictionReport(required, available, available)
        candidates = self.catalog.list_all(self.targets)

        for timestamp, _, owner in candidates:
            logger.info(f'Removing backup "{owner.name}@{timestamp}" to free up space for "{target.name}".')
            self.storage.delete_tree(self.catalog.version_path(owner, timestamp))
            report.removed.append((owner.name, timestamp))

            available = self.storage.available_bytes()
            report.available_after = available
            if available >= required:
                logger.info(
                    f"Removed {len(report.removed)} backup(s), {available / GB:.2f}GB available free space."
                )
                return report

        raise DiskFullError(
            f'Disk is full: removed {len(report.removed)} backup(s) but target "{target.name}" '
            f'requires {required} bytes and only {available} bytes are available.'
        )
