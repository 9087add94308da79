"""
rsync invocation for pulling a target from the remote host.

The argument list is built from typed fields and executed without a shell.
Unchanged files are hard-linked against the previous version with
``--link-dest``, which is resolved by rsync relative to the destination.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .targets import Target


logger = logging.getLogger(__name__)

DEFAULT_RSYNC_BIN = '/usr/local/bin/rsync'

# rsync exit codes
EXIT_SUCCESS = 0
EXIT_SOCKET_IO = 10
EXIT_PERMISSION_CLASS = (13, 23)
EXIT_NOT_FOUND = 127

TIMEOUT_SECONDS = 600


class TransferError(Exception):
    """Raised when a transfer fails after all attempts."""

    def __init__(self, message: str, exit_status: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr


@dataclass(frozen=True)
class TransferResult:
    """Exit status and diagnostic output of one rsync run."""

    exit_status: int
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_status == EXIT_SUCCESS

    @property
    def connection_error(self) -> bool:
        return self.exit_status == EXIT_SOCKET_IO

    @property
    def broken_pipe(self) -> bool:
        return 'broken pipe' in (self.stderr or '').lower()

    @property
    def transient(self) -> bool:
        """Failures expected to resolve on retry."""
        return not self.ok and (self.connection_error or self.broken_pipe)

    @property
    def permission_denied(self) -> bool:
        return self.exit_status in EXIT_PERMISSION_CLASS


def default_rsync_bin() -> str:
    if Path(DEFAULT_RSYNC_BIN).exists():
        return DEFAULT_RSYNC_BIN
    return 'rsync'


def build_rsync_args(target: Target, host: str, port: int, user: str, key: str,
                     destination, previous: Optional[int] = None) -> List[str]:
    """
    Build the rsync arguments for one transfer, without the binary.

    Args:
        target: Target being pulled
        host: Remote host
        port: Remote SSH port
        user: Remote SSH user
        key: Path to the SSH private key
        destination: Local directory the transfer writes into
        previous: Timestamp of the version to hard-link against

    Returns:
        List of arguments
    """
    args = ['-az']

    if target.delete_on_remote_removal:
        args.append('--delete')

    args.append(f'--timeout={TIMEOUT_SECONDS}')

    if target.is_directory:
        for pattern in target.exclude_patterns:
            args.append(f'--exclude={pattern}')

    # rsync splits the -e value itself
    args.extend(['-e', f'ssh -p {int(port)} -i {shlex.quote(str(key))}'])

    if target.is_directory and previous is not None:
        args.append(f'--link-dest=../{previous}')

    args.append('--sparse')
    args.append(f'{user}@{host}:{target.source_path}')
    args.append(str(destination).rstrip('/') + '/')
    return args


class RsyncTransfer:
    """Runs rsync as an external process."""

    def __init__(self, rsync_bin: Optional[str] = None):
        self.rsync_bin = rsync_bin or default_rsync_bin()

    def run(self, args: List[str]) -> TransferResult:
        """
        Run rsync to completion.

        Args:
            args: Arguments from build_rsync_args()

        Returns:
            TransferResult with the exit status and stderr
        """
        command = [self.rsync_bin] + list(args)
        logger.debug(f"Running {' '.join(shlex.quote(part) for part in command)}")

        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=dict(os.environ, LC_ALL='C'),
            )
        except FileNotFoundError as e:
            return TransferResult(EXIT_NOT_FOUND, f"rsync binary not found: {e}")

        return TransferResult(completed.returncode, completed.stderr or '')
