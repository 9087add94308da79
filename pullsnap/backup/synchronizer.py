"""
Snapshot synchronizer - pulls one target into a new version.

Workflow, evaluated once per scan for each target:
1. Idle if the target's next due time hasn't passed
2. Compute the version timestamp (bucket start of the scan time); skip if it exists
3. Reserve destination space (may delete old versions of any target)
4. rsync into a staging directory, hard-linking against the latest version
5. Retry transient failures (connection errors, broken pipes) up to 3 attempts
6. Promote the staging directory and schedule the next sync
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from .catalog import VersionCatalog
from .retention import DiskFullError, EvictionManager
from .storage import LocalStorage
from .targets import Target, TargetState
from .transfer import RsyncTransfer, TransferError, TransferResult, build_rsync_args


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

STATUS_IDLE = 'idle'
STATUS_SKIPPED = 'skipped'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'


@dataclass
class SyncOutcome:
    """Result and log of one synchronization of one target."""

    target_name: str
    timestamp: Optional[int] = None
    status: str = STATUS_IDLE
    attempts: int = 0
    exit_status: Optional[int] = None
    error_message: Optional[str] = None
    removed: List[Tuple[str, int]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    def log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp and forward it to the module logger.

        Args:
            message: Log message
            level: logging level
        """
        stamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{stamp}] {message}")
        logger.log(level, message)

    def to_dict(self) -> dict:
        return {
            'target': self.target_name,
            'timestamp': self.timestamp,
            'status': self.status,
            'attempts': self.attempts,
            'exit_status': self.exit_status,
            'error_message': self.error_message,
            'removed': [f"{name}@{timestamp}" for name, timestamp in self.removed],
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'logs': self.logs,
        }


class Synchronizer:
    """
    Per-target sync state machine.

    Scheduling state is never mutated in place: synchronize() returns the
    next TargetState record along with the outcome.
    """

    def __init__(self, catalog: VersionCatalog, storage: LocalStorage, eviction: EvictionManager,
                 transfer: RsyncTransfer, host: str, port: int, user: str, key: str):
        self.catalog = catalog
        self.storage = storage
        self.eviction = eviction
        self.transfer = transfer
        self.host = host
        self.port = port
        self.user = user
        self.key = key

    def synchronize(self, state: TargetState, scan_time: datetime,
                    now: Optional[float] = None) -> Tuple[TargetState, SyncOutcome]:
        """
        Evaluate one target for one scan.

        Args:
            state: Current scheduling state of the target
            scan_time: Time the scan started, used to name the version
            now: Current unix time, defaults to time.time()

        Returns:
            Tuple of (next state, outcome)

        Raises:
            DiskFullError: If the destination can't be cleared for this target
        """
        if now is None:
            now = time.time()

        target = state.target
        outcome = SyncOutcome(target_name=target.name)

        if not state.is_due(now):
            return state, outcome

        timestamp = target.bucket_start(scan_time)
        outcome.timestamp = timestamp

        if self.catalog.latest_version(target) == timestamp:
            outcome.status = STATUS_SKIPPED
            logger.debug(f'Backup "{target.name}@{timestamp}" already exists.')
            return state, outcome

        outcome.started_at = datetime.utcnow()
        outcome.log(f'Scanning target "{target.name}".')

        try:
            self._execute(target, timestamp, outcome)

        except DiskFullError as e:
            self._fail(outcome, str(e))
            raise

        except Exception as e:
            self._fail(outcome, f'Failed to pull target "{target.name}": {e}')
            return state, outcome

        outcome.status = STATUS_SUCCESS
        outcome.completed_at = datetime.utcnow()
        outcome.log(f'Synchronized "{target.name}@{timestamp}".')
        return state.scheduled(now), outcome

    def _execute(self, target: Target, timestamp: int, outcome: SyncOutcome):
        """Run reservation, transfer and promotion for one version."""
        for stale in self.catalog.list_staging(target):
            outcome.log(f"Discarding incomplete transfer {stale.name}", logging.WARNING)
            self.storage.delete_tree(stale)

        report = self.eviction.reserve_space(target)
        outcome.removed = report.removed

        # Eviction may have removed this target's own versions
        previous = self.catalog.latest_version(target) if target.is_directory else None
        staging = self.catalog.staging_path(target, timestamp)

        args = build_rsync_args(
            target, self.host, self.port, self.user, self.key, staging, previous
        )

        if previous is None:
            outcome.log(f'Synchronizing remote data of target "{target.name}@{timestamp}" (full copy).')
        else:
            outcome.log(
                f'Synchronizing remote data of target "{target.name}@{timestamp}" '
                f'(linked against {previous}).'
            )

        try:
            self._transfer_with_retry(target, timestamp, args, outcome)
        except TransferError:
            self.storage.delete_tree(staging)
            raise

        self.storage.promote(staging, self.catalog.version_path(target, timestamp))

    def _transfer_with_retry(self, target: Target, timestamp: int, args: List[str],
                             outcome: SyncOutcome) -> TransferResult:
        """
        Run the transfer, retrying transient failures.

        Raises:
            TransferError: On a non-transient failure or when attempts run out
        """
        result = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            outcome.attempts = attempt
            result = self.transfer.run(args)
            outcome.exit_status = result.exit_status

            if result.ok:
                return result

            if attempt < MAX_ATTEMPTS and result.transient:
                reason = 'Connection error' if result.connection_error else 'Broken pipe'
                outcome.log(f'{reason} while synchronizing "{target.name}@{timestamp}", retrying.',
                            logging.WARNING)
                continue

            break

        details = '\n    > '.join(result.stderr.strip().splitlines())
        message = f'rsync exited with status {result.exit_status}'
        if details:
            message += f':\n    > {details}'

        if result.permission_denied:
            outcome.log(
                "Consider adding these files to the exclude list in order to create a backup of this target.",
                logging.ERROR
            )

        raise TransferError(message, result.exit_status, result.stderr)

    def _fail(self, outcome: SyncOutcome, message: str):
        outcome.status = STATUS_FAILED
        outcome.error_message = message
        outcome.completed_at = datetime.utcnow()
        outcome.log(f"Error: {message}", logging.ERROR)
