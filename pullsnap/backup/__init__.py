"""
Backup module for pullsnap.

This module handles the snapshot engine:
- Target normalization and version naming
- Version catalog
- Remote size probe (SSH) and rsync transfer
- Disk space eviction
- Synchronization and the scan loop
"""

from .catalog import VersionCatalog, VersionNotFoundError
from .retention import DiskFullError, EvictionManager
from .scan import ScanLoop
from .server import BackupServer, OutputExistsError, TargetNotFoundError
from .settings import ServerSettings, load_server_settings
from .sources import RemoteSource, SourceError
from .storage import LocalStorage, StorageError
from .synchronizer import Synchronizer, SyncOutcome
from .targets import ConfigurationError, Target, TargetState
from .transfer import RsyncTransfer, TransferError

__all__ = [
    'BackupServer',
    'ConfigurationError',
    'DiskFullError',
    'EvictionManager',
    'LocalStorage',
    'OutputExistsError',
    'RemoteSource',
    'RsyncTransfer',
    'ScanLoop',
    'ServerSettings',
    'SourceError',
    'StorageError',
    'SyncOutcome',
    'Synchronizer',
    'Target',
    'TargetNotFoundError',
    'TargetState',
    'TransferError',
    'VersionCatalog',
    'VersionNotFoundError',
    'load_server_settings',
]
