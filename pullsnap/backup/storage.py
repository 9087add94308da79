"""
Local storage handler for snapshot directories.

All snapshots of all targets live on one destination volume:
{base_path}/{target_name}/{unix_timestamp}/...
"""

import os
import shutil
from pathlib import Path


class StorageError(Exception):
    """Raised when a local storage operation fails."""
    pass


class LocalStorage:
    """
    Handler for the backup destination on the local filesystem.

    Versions are only ever created by promoting a finished staging directory
    and only ever removed as a whole tree.
    """

    def __init__(self, base_path):
        """
        Initialize local storage handler.

        Args:
            base_path: Backup destination root
        """
        self.base_path = Path(base_path)

        # Create base directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def available_bytes(self) -> int:
        """
        Get the free capacity of the destination volume.

        Returns:
            Bytes available to this process

        Raises:
            StorageError: If the volume cannot be queried
        """
        try:
            return shutil.disk_usage(self.base_path).free
        except OSError as e:
            raise StorageError(f"Failed to query available space of {self.base_path}: {e}")

    def delete_tree(self, path):
        """
        Delete a version directory and all its contents.

        Args:
            path: Directory to remove

        Raises:
            StorageError: If deletion fails
        """
        path = Path(path)

        try:
            if path.exists():
                shutil.rmtree(path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete {path}: {e}")

    def promote(self, staging_path, final_path):
        """
        Move a completed staging directory to its final version path.

        Raises:
            StorageError: If the final path exists or the rename fails
        """
        staging_path = Path(staging_path)
        final_path = Path(final_path)

        if final_path.exists():
            raise StorageError(f"Version directory already exists: {final_path}")

        try:
            os.rename(staging_path, final_path)
        except OSError as e:
            raise StorageError(f"Failed to promote {staging_path} to {final_path}: {e}")

    def copy_tree(self, source_path, dest_path):
        """
        Copy a version directory to an output location.

        Symlinks are copied as links; file contents, modes and mtimes are
        preserved.

        Args:
            source_path: Version directory
            dest_path: Output path, must not exist

        Raises:
            StorageError: If the output exists or copying fails
        """
        source_path = Path(source_path)
        dest_path = Path(dest_path)

        if dest_path.exists() or dest_path.is_symlink():
            raise StorageError(f"Output path already exists: {dest_path}")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copytree(source_path, dest_path, symlinks=True)
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to copy {source_path} to {dest_path}: {e}")
