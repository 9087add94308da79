"""
Shared pytest fixtures for pullsnap tests.

This module provides fixtures for:
- Backup destination and target factories
- A simulated destination disk with scripted free space
- A fake remote source and a fake rsync runner
- A BackupServer wired to the fakes, and the Flask app / test client
"""

import os
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from pullsnap import create_app
from pullsnap.backup.server import BackupServer
from pullsnap.backup.settings import ServerSettings
from pullsnap.backup.sources import RemoteSource
from pullsnap.backup.storage import LocalStorage
from pullsnap.backup.targets import normalize_target
from pullsnap.backup.transfer import TransferResult


class SimulatedDisk(LocalStorage):
    """
    LocalStorage with scripted free space.

    Every deleted version frees ``freed_per_version`` bytes.
    """

    def __init__(self, base_path, available=10 ** 12, freed_per_version=0):
        super().__init__(base_path)
        self.available = available
        self.freed_per_version = freed_per_version
        self.deleted = []

    def available_bytes(self) -> int:
        return self.available

    def delete_tree(self, path):
        path = Path(path)
        existed = path.is_dir() and path.name.isdigit()
        super().delete_tree(path)
        if existed:
            self.deleted.append((path.parent.name, int(path.name)))
            self.available += self.freed_per_version


class FakeTransfer:
    """
    Stand-in for RsyncTransfer.

    Plays back scripted results. A successful run materializes the
    destination directory the way rsync would, hard-linking files that are
    unchanged against the --link-dest directory.
    """

    def __init__(self, results=None, files=None):
        self.results = list(results or [])
        self.files = files if files is not None else {'data.txt': b'payload'}
        self.calls = []

    def run(self, args):
        self.calls.append(list(args))
        result = self.results.pop(0) if self.results else TransferResult(0)

        destination = Path(args[-1])
        destination.mkdir(parents=True, exist_ok=True)
        if result.ok:
            link_dest = next((a.split('=', 1)[1] for a in args if a.startswith('--link-dest=')), None)
            for name, content in self.files.items():
                target = destination / name
                previous = (destination / link_dest / name) if link_dest else None
                if previous is not None and previous.exists() and previous.read_bytes() == content:
                    os.link(previous, target)
                else:
                    target.write_bytes(content)
        return result


@pytest.fixture
def destination(tmp_path):
    """Backup destination root."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def make_target(destination):
    """Factory building normalized targets under the destination."""

    def _make(source='/remote/data', **kwargs):
        raw = {'source': source}
        raw.update(kwargs)
        return normalize_target(raw, destination, allow_local_source=True)

    return _make


@pytest.fixture
def make_versions():
    """Factory creating version directories for a target."""

    def _make(target, *timestamps):
        for timestamp in timestamps:
            version = Path(target.local_root) / str(timestamp)
            version.mkdir(parents=True, exist_ok=True)
            (version / 'file.txt').write_text(f'version {timestamp}')

    return _make


@pytest.fixture
def disk(destination):
    """Simulated destination disk with plenty of free space."""
    return SimulatedDisk(destination)


@pytest.fixture
def make_disk(destination):
    """Factory building simulated disks over the destination."""

    def _make(available=10 ** 12, freed_per_version=0):
        return SimulatedDisk(destination, available, freed_per_version)

    return _make


@pytest.fixture
def remote_source():
    """Remote source reporting 1 MB for every target."""
    source = MagicMock(spec=RemoteSource)
    source.probe_size.return_value = 1024 * 1024
    return source


@pytest.fixture
def fake_transfer():
    return FakeTransfer()


@pytest.fixture
def server_settings(destination, make_target):
    """Settings with two targets, t1 and t2."""
    return ServerSettings(
        ip='backup.example.com',
        user='backup',
        key='/keys/id_backup',
        destination=destination,
        targets=[
            make_target('/remote/t1', name='t1'),
            make_target('/remote/t2', name='t2'),
        ],
        timezone='UTC',
    )


@pytest.fixture
def backup_server(server_settings, remote_source, disk, fake_transfer):
    """BackupServer wired to the fakes."""
    return BackupServer(server_settings, source=remote_source, storage=disk, transfer=fake_transfer)


@pytest.fixture
def app(backup_server):
    """Flask app in testing mode, scan loop not started."""
    app = create_app('testing', server=backup_server)
    yield app
    shutil.rmtree(app.config['LOG_DIR'], ignore_errors=True)


@pytest.fixture
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()
