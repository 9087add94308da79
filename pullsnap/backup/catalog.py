"""
Version catalog: enumerates the snapshot directories of a target.

Only entries named by an integer unix timestamp are versions. Anything else
in a target directory (size cache files, in-progress staging directories)
is ignored.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .targets import Target


logger = logging.getLogger(__name__)

STAGING_PREFIX = '.incomplete-'


class VersionNotFoundError(LookupError):
    """Raised when a target has no version with the requested timestamp."""
    pass


def parse_version_name(name: str) -> Optional[int]:
    """Return the timestamp encoded in a directory name, or None."""
    if not (name.isascii() and name.isdigit()):
        return None
    return int(name)


class VersionCatalog:
    """Read-only view over the version directories of targets."""

    def list_versions(self, target: Target) -> List[int]:
        """
        List version timestamps of a target, oldest first.

        Args:
            target: Target to inspect

        Returns:
            Ascending list of timestamps, empty if the directory can't be listed
        """
        try:
            names = os.listdir(target.local_root)
        except OSError as e:
            logger.warning(f"Unable to list versions of target {target.name}: {e}")
            return []

        versions = []
        for name in names:
            timestamp = parse_version_name(name)
            if timestamp is not None and (Path(target.local_root) / name).is_dir():
                versions.append(timestamp)

        versions.sort()
        return versions

    def latest_version(self, target: Target) -> Optional[int]:
        versions = self.list_versions(target)
        return versions[-1] if versions else None

    def version_path(self, target: Target, timestamp: int) -> Path:
        return Path(target.local_root) / str(timestamp)

    def staging_path(self, target: Target, timestamp: int) -> Path:
        """Directory a transfer writes into before it becomes a version."""
        return Path(target.local_root) / f"{STAGING_PREFIX}{timestamp}"

    def list_staging(self, target: Target) -> List[Path]:
        try:
            names = os.listdir(target.local_root)
        except OSError:
            return []
        return sorted(
            Path(target.local_root) / name
            for name in names if name.startswith(STAGING_PREFIX)
        )

    def resolve(self, target: Target, timestamp: int) -> Path:
        """
        Get the directory of an existing version.

        Raises:
            VersionNotFoundError: If no version with that exact timestamp exists
        """
        path = self.version_path(target, timestamp)
        if not path.is_dir():
            raise VersionNotFoundError(
                f'Unable to find target backup with timestamp "{target.name}@{timestamp}".'
            )
        return path

    def list_all(self, targets: Iterable[Target]) -> List[Tuple[int, int, Target]]:
        """
        Collect every version of every target.

        Returns:
            List of (timestamp, target index, target), sorted oldest first;
            equal timestamps keep the configured target order
        """
        candidates = []
        for index, target in enumerate(targets):
            for timestamp in self.list_versions(target):
                candidates.append((timestamp, index, target))

        candidates.sort(key=lambda item: (item[0], item[1]))
        return candidates
