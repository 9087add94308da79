"""
Unit tests for the snapshot synchronizer (pullsnap/backup/synchronizer.py).

Uses the fake rsync runner from conftest, which writes real files and
hard-links unchanged ones against the --link-dest directory.
"""

import os
from datetime import datetime, timezone

import pytest

from pullsnap.backup.retention import DiskFullError
from pullsnap.backup.sources import SourceError
from pullsnap.backup.synchronizer import (
    MAX_ATTEMPTS,
    STATUS_FAILED,
    STATUS_IDLE,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
)
from pullsnap.backup.targets import TargetState
from pullsnap.backup.transfer import TransferResult


DAY = 86400
# 2024-01-15 00:00:00 UTC
D0 = 1705276800
D1 = D0 + DAY

SOCKET_ERROR = TransferResult(10, 'rsync error: error in socket IO (code 10)')
BROKEN_PIPE = TransferResult(255, 'packet_write_wait: Connection to 10.0.0.2: Broken pipe')
PERMISSION_DENIED_STDERR = 'rsync: send_files failed to open "/remote/t1/secret": Permission denied (13)'


def at(timestamp):
    return datetime.fromtimestamp(timestamp, timezone.utc)


def sync(server, state, timestamp):
    return server.synchronizer.synchronize(state, at(timestamp), now=timestamp)


@pytest.fixture
def t1(backup_server):
    return backup_server.targets[0]


@pytest.fixture
def state(t1):
    return TargetState(t1)


class TestSynchronize:
    """Test the per-target state machine."""

    def test_first_sync_is_full_copy(self, backup_server, state, t1, fake_transfer):
        next_state, outcome = sync(backup_server, state, D0 + 3600)

        assert outcome.status == STATUS_SUCCESS
        assert outcome.timestamp == D0
        assert outcome.attempts == 1
        assert next_state.next_due_at == D0 + 3600 + DAY
        assert (t1.local_root / str(D0) / 'data.txt').read_bytes() == b'payload'
        assert not any(a.startswith('--link-dest') for a in fake_transfer.calls[0])

    def test_transfer_writes_to_staging_then_promotes(self, backup_server, state, t1, fake_transfer):
        sync(backup_server, state, D0)

        destination = fake_transfer.calls[0][-1]
        assert destination == f'{t1.local_root}/.incomplete-{D0}/'
        assert backup_server.catalog.list_staging(t1) == []
        assert backup_server.catalog.list_versions(t1) == [D0]

    def test_not_due_is_idle(self, backup_server, t1, fake_transfer):
        state = TargetState(t1, next_due_at=D0 + DAY)

        next_state, outcome = sync(backup_server, state, D0 + 60)

        assert outcome.status == STATUS_IDLE
        assert next_state is state
        assert fake_transfer.calls == []

    def test_existing_version_is_skipped(self, backup_server, state, t1, make_versions, fake_transfer,
                                         remote_source):
        make_versions(t1, D0)

        next_state, outcome = sync(backup_server, state, D0 + 7200)

        assert outcome.status == STATUS_SKIPPED
        assert outcome.timestamp == D0
        assert next_state is state
        assert fake_transfer.calls == []
        remote_source.probe_size.assert_not_called()

    def test_daily_snapshots_share_unchanged_files(self, backup_server, state, t1, fake_transfer):
        """Test D0, then D0+1s (not due), then D1 hard-linked against D0."""
        state, first = sync(backup_server, state, D0)
        state, second = sync(backup_server, state, D0 + 1)
        state, third = sync(backup_server, state, D1 + 1)

        assert [first.status, second.status, third.status] == [STATUS_SUCCESS, STATUS_IDLE, STATUS_SUCCESS]
        assert backup_server.catalog.list_versions(t1) == [D0, D1]
        assert f'--link-dest=../{D0}' in fake_transfer.calls[1]

        old = os.stat(t1.local_root / str(D0) / 'data.txt')
        new = os.stat(t1.local_root / str(D1) / 'data.txt')
        assert old.st_ino == new.st_ino

    def test_changed_files_are_copied(self, backup_server, state, t1, fake_transfer):
        state, _ = sync(backup_server, state, D0)
        fake_transfer.files = {'data.txt': b'changed'}

        sync(backup_server, state, D1 + 1)

        assert (t1.local_root / str(D0) / 'data.txt').read_bytes() == b'payload'
        assert (t1.local_root / str(D1) / 'data.txt').read_bytes() == b'changed'

    def test_file_target_never_links(self, backup_server, make_target, make_versions, fake_transfer):
        target = make_target('/remote/db.sqlite', directory=False)
        make_versions(target, D0)

        _, outcome = backup_server.synchronizer.synchronize(TargetState(target), at(D1), now=D1)

        assert outcome.status == STATUS_SUCCESS
        assert not any(a.startswith('--link-dest') for a in fake_transfer.calls[0])

    def test_stale_staging_is_discarded(self, backup_server, state, t1):
        stale = t1.local_root / f'.incomplete-{D0}'
        stale.mkdir()
        (stale / 'partial.bin').write_bytes(b'half')

        _, outcome = sync(backup_server, state, D1)

        assert outcome.status == STATUS_SUCCESS
        assert not stale.exists()
        assert any('Discarding incomplete transfer' in line for line in outcome.logs)

    def test_source_error_fails_without_rescheduling(self, backup_server, state, remote_source, fake_transfer):
        remote_source.probe_size.side_effect = SourceError('SSH authentication failed')

        next_state, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_FAILED
        assert 'SSH authentication failed' in outcome.error_message
        assert next_state is state
        assert next_state.is_due(D0 + 60)
        assert fake_transfer.calls == []

    def test_outcome_to_dict(self, backup_server, state):
        _, outcome = sync(backup_server, state, D0)

        data = outcome.to_dict()

        assert data['target'] == 't1'
        assert data['timestamp'] == D0
        assert data['status'] == STATUS_SUCCESS
        assert data['removed'] == []
        assert data['started_at'] is not None
        assert data['logs']


class TestRetry:
    """Test retry policy for transient transfer failures."""

    def test_connection_errors_retried_until_success(self, backup_server, state, t1, fake_transfer):
        fake_transfer.results = [SOCKET_ERROR, SOCKET_ERROR, TransferResult(0)]

        _, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_SUCCESS
        assert outcome.attempts == 3
        assert len(fake_transfer.calls) == 3
        assert sum('Connection error while synchronizing' in line for line in outcome.logs) == 2
        assert backup_server.catalog.list_versions(t1) == [D0]

    def test_broken_pipe_retried(self, backup_server, state, fake_transfer):
        fake_transfer.results = [BROKEN_PIPE, TransferResult(0)]

        _, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_SUCCESS
        assert outcome.attempts == 2
        assert any('Broken pipe while synchronizing' in line for line in outcome.logs)

    def test_attempts_exhausted(self, backup_server, state, t1, fake_transfer):
        fake_transfer.results = [SOCKET_ERROR] * MAX_ATTEMPTS

        next_state, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_FAILED
        assert outcome.attempts == MAX_ATTEMPTS
        assert outcome.exit_status == 10
        assert len(fake_transfer.calls) == MAX_ATTEMPTS
        assert next_state is state
        assert backup_server.catalog.list_versions(t1) == []
        assert backup_server.catalog.list_staging(t1) == []

    @pytest.mark.parametrize('status', [13, 23])
    def test_permission_denied_not_retried(self, backup_server, state, t1, fake_transfer, status):
        """Test exit 13 and 23 fail at once with exclude guidance and no partial version."""
        fake_transfer.results = [TransferResult(status, PERMISSION_DENIED_STDERR)]

        _, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_FAILED
        assert len(fake_transfer.calls) == 1
        assert outcome.exit_status == status
        assert 'Permission denied' in outcome.error_message
        assert any('exclude list' in line for line in outcome.logs)
        assert backup_server.catalog.list_versions(t1) == []
        assert backup_server.catalog.list_staging(t1) == []

    def test_other_failure_not_retried(self, backup_server, state, fake_transfer):
        fake_transfer.results = [TransferResult(12, 'protocol data stream error')]

        _, outcome = sync(backup_server, state, D0)

        assert outcome.status == STATUS_FAILED
        assert len(fake_transfer.calls) == 1
        assert not any('exclude list' in line for line in outcome.logs)


class TestSpaceReservation:
    """Test interaction with eviction."""

    def test_disk_full_before_transfer(self, backup_server, state, disk, fake_transfer):
        disk.available = 0

        with pytest.raises(DiskFullError):
            sync(backup_server, state, D0)

        assert fake_transfer.calls == []

    def test_eviction_recorded_in_outcome(self, backup_server, state, make_versions, disk):
        t1, t2 = backup_server.targets
        make_versions(t2, D0 - DAY)
        make_versions(t1, D0)
        backup_server.eviction.auto_remove = True
        disk.available = 0
        disk.freed_per_version = 2 * 1024 * 1024

        _, outcome = sync(backup_server, state, D1)

        assert outcome.status == STATUS_SUCCESS
        assert outcome.removed == [('t2', D0 - DAY)]
        assert outcome.to_dict()['removed'] == [f't2@{D0 - DAY}']

    def test_evicted_previous_version_is_not_linked(self, backup_server, state, t1, make_versions,
                                                    disk, fake_transfer):
        """Test the link target is chosen after eviction, not before."""
        make_versions(t1, D0)
        backup_server.eviction.auto_remove = True
        disk.available = 0
        disk.freed_per_version = 2 * 1024 * 1024

        _, outcome = sync(backup_server, state, D1)

        assert outcome.status == STATUS_SUCCESS
        assert outcome.removed == [('t1', D0)]
        assert not any(a.startswith('--link-dest') for a in fake_transfer.calls[0])
        assert backup_server.catalog.list_versions(t1) == [D1]
