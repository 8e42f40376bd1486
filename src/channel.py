"""
SSH execution channel for the managed host.

One paramiko connection is kept per host and reused across commands until
it has been idle for `idle_timeout` seconds. Each command gets its own SSH
session on that connection; stdout and stderr are drained together so a
chatty stream cannot stall the other.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import paramiko

from errors import TransportError
from models import CommandExecutionResult

logger = logging.getLogger(__name__)

READ_CHUNK = 32768
# paramiko leaves exit_status at -1 when the session ends without an exit-status message
NO_EXIT_STATUS = -1


@dataclass
class _Connection:
    client: paramiko.SSHClient
    last_used: float


class RemoteExecutionChannel:
    """Runs whitelisted commands on the managed host over key-based SSH."""

    def __init__(
        self,
        username: str = "root",
        key_filename: Optional[str] = None,
        port: int = 22,
        connect_timeout: float = 15.0,
        idle_timeout: float = 600.0,
        command_timeout: Optional[float] = None,
        read_interval: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the execution channel.

        Args:
            username: Remote login user
            key_filename: Private key used for authentication
            port: SSH port
            connect_timeout: TCP, banner and auth timeout (seconds)
            idle_timeout: Idle time after which a cached connection is closed
            command_timeout: Optional wall-clock limit per command (seconds)
            read_interval: Sleep between output polls when nothing is ready
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        self.username = username
        self.key_filename = key_filename
        self.port = port
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.command_timeout = command_timeout
        self.read_interval = read_interval
        self._clock = clock
        self._sleep = sleep
        self._connections: Dict[str, _Connection] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "RemoteExecutionChannel":
        return cls(
            username=config.ssh_user,
            key_filename=config.key_filename,
            port=config.ssh_port,
            connect_timeout=config.connect_timeout,
            idle_timeout=config.connection_idle_timeout,
            command_timeout=config.command_timeout,
        )

    # --- connection cache

    def _connect(self, host: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=self.username,
                key_filename=self.key_filename,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise TransportError(f"SSH authentication failed for {host}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportError(f"SSH connection to {host} failed: {e}") from e

        logger.debug(f"Opened SSH connection to {self.username}@{host}:{self.port}")
        return client

    @staticmethod
    def _is_active(client: paramiko.SSHClient) -> bool:
        transport = client.get_transport()
        return transport is not None and transport.is_active()

    def _acquire(self, host: str) -> paramiko.SSHClient:
        with self._lock:
            now = self._clock()
            conn = self._connections.get(host)
            if conn is not None:
                if now - conn.last_used > self.idle_timeout:
                    logger.debug(f"SSH connection to {host} idle, reconnecting")
                    self._close_locked(host)
                    conn = None
                elif not self._is_active(conn.client):
                    logger.info(f"SSH connection to {host} dropped, reconnecting")
                    self._close_locked(host)
                    conn = None
            if conn is None:
                conn = _Connection(client=self._connect(host), last_used=now)
                self._connections[host] = conn
            conn.last_used = now
            return conn.client

    def _touch(self, host: str) -> None:
        with self._lock:
            conn = self._connections.get(host)
            if conn is not None:
                conn.last_used = self._clock()

    def _close_locked(self, host: str) -> None:
        conn = self._connections.pop(host, None)
        if conn is not None:
            conn.client.close()

    def discard(self, host: str) -> None:
        """Close and forget the cached connection to `host`."""
        with self._lock:
            self._close_locked(host)

    def reap_idle(self) -> int:
        """Close connections idle longer than idle_timeout; return how many."""
        with self._lock:
            now = self._clock()
            stale = [
                host
                for host, conn in self._connections.items()
                if now - conn.last_used > self.idle_timeout
            ]
            for host in stale:
                self._close_locked(host)
        for host in stale:
            logger.debug(f"Closed idle SSH connection to {host}")
        return len(stale)

    def close(self) -> None:
        """Close every cached connection."""
        with self._lock:
            for host in list(self._connections):
                self._close_locked(host)

    def connected_hosts(self) -> List[str]:
        with self._lock:
            return list(self._connections)

    # --- execution

    def execute(self, host: str, command: str) -> CommandExecutionResult:
        """
        Run one command to completion on `host`.

        Args:
            host: Remote host name or IP
            command: Already-authorized command string

        Returns:
            CommandExecutionResult with separate stdout and stderr

        Raises:
            TransportError: If the connection or remote process fails
        """
        self.reap_idle()
        client = self._acquire(host)
        logger.info(f"Executing on {host}: {command}")

        transport = client.get_transport()
        if transport is None:
            self.discard(host)
            raise TransportError(f"SSH transport to {host} is closed")

        try:
            channel = transport.open_session(timeout=self.connect_timeout)
            channel.exec_command(command)
        except (paramiko.SSHException, OSError, EOFError) as e:
            self.discard(host)
            raise TransportError(f"Failed to start command on {host}: {e}") from e

        try:
            stdout, stderr = self._drain(channel)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            self.discard(host)
            raise TransportError(f"Lost connection to {host} while running command: {e}") from e
        finally:
            channel.close()

        if exit_code == NO_EXIT_STATUS:
            self.discard(host)
            raise TransportError(
                f"Connection to {host} dropped before {command!r} reported an exit status"
            )

        self._touch(host)
        logger.debug(f"Command on {host} exited with {exit_code}")
        return CommandExecutionResult.from_exit_code(
            exit_code,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def _drain(self, channel):
        out: List[bytes] = []
        err: List[bytes] = []
        started = self._clock()

        while True:
            progressed = self._read_available(channel, out, err)
            finished = channel.closed or (
                channel.eof_received and channel.exit_status_ready()
            )
            if finished:
                self._read_available(channel, out, err)
                break
            if (
                self.command_timeout is not None
                and self._clock() - started > self.command_timeout
            ):
                raise TransportError(
                    f"Remote command did not finish within {self.command_timeout}s"
                )
            if not progressed:
                self._sleep(self.read_interval)

        return b"".join(out), b"".join(err)

    @staticmethod
    def _read_available(channel, out: List[bytes], err: List[bytes]) -> bool:
        progressed = False
        while channel.recv_ready():
            out.append(channel.recv(READ_CHUNK))
            progressed = True
        while channel.recv_stderr_ready():
            err.append(channel.recv_stderr(READ_CHUNK))
            progressed = True
        return progressed
