"""
Remote source handler.

Measures how much space a target's source occupies on the remote host, so
the destination can be cleared before a sync starts. The measurement runs
``du -sk`` over SSH and reports whole kilobytes.
"""

import logging
import shlex
from pathlib import Path

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .targets import Target


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when the remote source cannot be measured."""
    pass


class RemoteSource:
    """
    Handler for the remote host all targets are pulled from.

    Opens a fresh SSH connection per probe and always closes it afterwards.
    """

    def __init__(self, host: str, port: int, username: str, private_key: str, timeout: int = 30):
        """
        Initialize remote source handler.

        Args:
            host: SSH hostname or IP
            port: SSH port
            username: SSH username
            private_key: Path to private key file
            timeout: Connection timeout in seconds
        """
        self.host = host
        self.port = port
        self.username = username
        self.private_key_path = private_key
        self.timeout = timeout

        self.ssh_client = None

    @property
    def endpoint(self) -> str:
        return f"{self.username}@{self.host}"

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            SourceError: If connection fails
        """
        key_path = Path(self.private_key_path).expanduser()
        if not key_path.exists():
            raise SourceError(f"Private key not found: {self.private_key_path}")

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=str(key_path),
                timeout=self.timeout
            )

        except paramiko.AuthenticationException as e:
            raise SourceError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise SourceError(f"SSH connection failed: {e}")
        except Exception as e:
            raise SourceError(f"Failed to connect to {self.host}: {e}")

    def probe_size(self, target: Target) -> int:
        """
        Get the disk usage of a target's remote source.

        Args:
            target: Target to measure

        Returns:
            Occupied size in bytes

        Raises:
            SourceError: If the command fails or its output is not a number
        """
        logger.info(f'Retrieving remote size of target "{target.name}".')
        command = f"du -sk {shlex.quote(target.source_path)}"

        try:
            self._connect()
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=600)
            output = stdout.read().decode('utf-8', errors='replace')
            exit_status = stdout.channel.recv_exit_status()
            errors = stderr.read().decode('utf-8', errors='replace').strip()
        except SourceError:
            raise
        except Exception as e:
            raise SourceError(f'Failed to retrieve the remote size of target "{target.source_path}": {e}')
        finally:
            self.cleanup()

        if exit_status != 0:
            raise SourceError(
                f'Failed to retrieve the remote size of target "{target.source_path}" '
                f'[{exit_status}]: {errors}'
            )

        fields = output.split()
        if not fields or not fields[0].isdigit():
            raise SourceError(
                f'Failed to retrieve the remote size of target "{target.source_path}": '
                f'Unable to parse number "{output.strip()}".'
            )

        kilobytes = int(fields[0])
        logger.info(f'Size of remote target "{target.name}" is {kilobytes / 1024 / 1024:.2f}GB.')
        return kilobytes * 1024

    def cleanup(self):
        """Close the SSH connection."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Ignoring error while closing SSH connection: {e}")
            self.ssh_client = None
