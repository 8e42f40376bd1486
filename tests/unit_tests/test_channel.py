"""
Unit tests for RemoteExecutionChannel.
"""

import socket
import unittest
from unittest.mock import MagicMock, patch

import paramiko

from channel import RemoteExecutionChannel
from errors import TransportError


class FakeSession:
    """Stands in for a paramiko Channel running one command."""

    def __init__(self, stdout=(), stderr=(), exit_code=0, stall=0, never_finish=False):
        self._out = list(stdout)
        self._err = list(stderr)
        self.exit_code = exit_code
        self.stall = stall  # polls that see no data before output arrives
        self.never_finish = never_finish
        self.closed = False
        self.command = None

    @property
    def eof_received(self):
        return not self.never_finish and not self._out and not self._err

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        if self.stall:
            return False
        return bool(self._out)

    def recv(self, nbytes):
        return self._out.pop(0)

    def recv_stderr_ready(self):
        if self.stall:
            self.stall -= 1
            return False
        return bool(self._err)

    def recv_stderr(self, nbytes):
        return self._err.pop(0)

    def exit_status_ready(self):
        return self.eof_received

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True


def make_client(*sessions, active=True):
    client = MagicMock()
    transport = client.get_transport.return_value
    transport.is_active.return_value = active
    transport.open_session.side_effect = list(sessions)
    return client


class TestRemoteExecutionChannel(unittest.TestCase):
    """Test command execution and connection reuse."""

    def setUp(self):
        """Set up test fixtures."""
        self.now = [1000.0]
        self.sleep = MagicMock()
        self.channel = RemoteExecutionChannel(
            username="root",
            key_filename="/keys/id_rsa",
            idle_timeout=600.0,
            clock=lambda: self.now[0],
            sleep=self.sleep,
        )

    @patch("paramiko.SSHClient")
    def test_execute_success(self, mock_client_class):
        """Test stdout and stderr are captured separately."""
        session = FakeSession(stdout=[b"Restarting ghana\n", b"done\n"], stderr=[b"warn\n"])
        client = make_client(session)
        mock_client_class.return_value = client

        result = self.channel.execute("10.0.0.5", "wb restart ghana")

        self.assertTrue(result.success)
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(result.stdout, "Restarting ghana\ndone\n")
        self.assertEqual(result.stderr, "warn\n")
        self.assertEqual(session.command, "wb restart ghana")
        self.assertTrue(session.closed)

    @patch("paramiko.SSHClient")
    def test_connect_uses_key_only(self, mock_client_class):
        """Test authentication is key-based with agent and key search disabled."""
        client = make_client(FakeSession())
        mock_client_class.return_value = client

        self.channel.execute("10.0.0.5", "docker ps")

        kwargs = client.connect.call_args.kwargs
        self.assertEqual(kwargs["hostname"], "10.0.0.5")
        self.assertEqual(kwargs["username"], "root")
        self.assertEqual(kwargs["key_filename"], "/keys/id_rsa")
        self.assertFalse(kwargs["allow_agent"])
        self.assertFalse(kwargs["look_for_keys"])
        self.assertNotIn("password", kwargs)

    @patch("paramiko.SSHClient")
    def test_nonzero_exit(self, mock_client_class):
        """Test a failing command is reported, not raised."""
        session = FakeSession(stderr=[b"No such container: ghana\n"], exit_code=1)
        mock_client_class.return_value = make_client(session)

        result = self.channel.execute("10.0.0.5", "docker logs ghana")

        self.assertFalse(result.success)
        self.assertEqual(result.exit_code, 1)
        self.assertEqual(result.stderr, "No such container: ghana\n")

    @patch("paramiko.SSHClient")
    def test_output_not_truncated(self, mock_client_class):
        """Test large output is reassembled in full."""
        chunks = [(f"line {i}\n" * 100).encode() for i in range(200)]
        mock_client_class.return_value = make_client(FakeSession(stdout=chunks))

        result = self.channel.execute("10.0.0.5", "docker logs ghana")

        self.assertEqual(result.stdout, b"".join(chunks).decode())

    @patch("paramiko.SSHClient")
    def test_waits_when_no_output_ready(self, mock_client_class):
        """Test the drain loop sleeps while the command produces nothing."""
        session = FakeSession(stdout=[b"ok\n"], stall=3)
        mock_client_class.return_value = make_client(session)

        result = self.channel.execute("10.0.0.5", "wb pull")

        self.assertEqual(result.stdout, "ok\n")
        self.assertEqual(self.sleep.call_count, 3)

    @patch("paramiko.SSHClient")
    def test_connection_reused(self, mock_client_class):
        """Test sequential commands share one connection."""
        client = make_client(FakeSession(), FakeSession())
        mock_client_class.return_value = client

        self.channel.execute("10.0.0.5", "wb c update ghana --server 1.6.12")
        self.now[0] += 5
        self.channel.execute("10.0.0.5", "wb restart ghana")

        self.assertEqual(mock_client_class.call_count, 1)
        self.assertEqual(client.connect.call_count, 1)
        self.assertEqual(self.channel.connected_hosts(), ["10.0.0.5"])

    @patch("paramiko.SSHClient")
    def test_idle_connection_replaced(self, mock_client_class):
        """Test a connection idle past the timeout is closed and reopened."""
        first = make_client(FakeSession())
        second = make_client(FakeSession())
        mock_client_class.side_effect = [first, second]

        self.channel.execute("10.0.0.5", "docker ps")
        self.now[0] += 601
        self.channel.execute("10.0.0.5", "docker ps")

        first.close.assert_called_once()
        self.assertEqual(mock_client_class.call_count, 2)

    @patch("paramiko.SSHClient")
    def test_inactive_transport_replaced(self, mock_client_class):
        """Test a dropped transport triggers a reconnect."""
        first = make_client(FakeSession(), FakeSession())
        second = make_client(FakeSession())
        mock_client_class.side_effect = [first, second]

        self.channel.execute("10.0.0.5", "docker ps")
        first.get_transport.return_value.is_active.return_value = False
        self.channel.execute("10.0.0.5", "docker ps")

        first.close.assert_called_once()
        self.assertEqual(mock_client_class.call_count, 2)

    @patch("paramiko.SSHClient")
    def test_connect_failure_raises_transport_error(self, mock_client_class):
        """Test socket errors surface as TransportError."""
        client = MagicMock()
        client.connect.side_effect = socket.error("Connection refused")
        mock_client_class.return_value = client

        with self.assertRaises(TransportError):
            self.channel.execute("10.0.0.5", "docker ps")

        client.close.assert_called_once()
        self.assertEqual(self.channel.connected_hosts(), [])

    @patch("paramiko.SSHClient")
    def test_auth_failure_raises_transport_error(self, mock_client_class):
        """Test authentication failures surface as TransportError."""
        client = MagicMock()
        client.connect.side_effect = paramiko.AuthenticationException("denied")
        mock_client_class.return_value = client

        with self.assertRaises(TransportError) as ctx:
            self.channel.execute("10.0.0.5", "docker ps")

        self.assertIn("authentication", str(ctx.exception))

    @patch("paramiko.SSHClient")
    def test_spawn_failure_drops_connection(self, mock_client_class):
        """Test a failed session open discards the cached connection."""
        client = MagicMock()
        client.get_transport.return_value.is_active.return_value = True
        client.get_transport.return_value.open_session.side_effect = paramiko.SSHException(
            "channel open failed"
        )
        mock_client_class.return_value = client

        with self.assertRaises(TransportError):
            self.channel.execute("10.0.0.5", "wb restart ghana")

        client.close.assert_called_once()
        self.assertEqual(self.channel.connected_hosts(), [])

    @patch("paramiko.SSHClient")
    def test_session_dropped_mid_command(self, mock_client_class):
        """Test a session closed without an exit status is a transport failure."""
        session = FakeSession(stdout=[b"Updating ghana\n"], exit_code=-1)
        session.closed = True
        client = make_client(session)
        mock_client_class.return_value = client

        with self.assertRaises(TransportError) as ctx:
            self.channel.execute("10.0.0.5", "wb c update ghana --server 1.6.12")

        self.assertIn("dropped", str(ctx.exception))
        client.close.assert_called_once()
        self.assertEqual(self.channel.connected_hosts(), [])

    @patch("paramiko.SSHClient")
    def test_command_timeout(self, mock_client_class):
        """Test a command that never finishes hits the wall-clock limit."""
        channel = RemoteExecutionChannel(
            command_timeout=10.0,
            clock=lambda: self.now[0],
            sleep=lambda s: self.now.__setitem__(0, self.now[0] + 5),
        )
        session = FakeSession(never_finish=True)
        mock_client_class.return_value = make_client(session)

        with self.assertRaises(TransportError):
            channel.execute("10.0.0.5", "wb pull")

        self.assertTrue(session.closed)

    @patch("paramiko.SSHClient")
    def test_reap_idle_and_close(self, mock_client_class):
        """Test idle reaping and explicit close."""
        first = make_client(FakeSession())
        second = make_client(FakeSession())
        mock_client_class.side_effect = [first, second]

        self.channel.execute("10.0.0.5", "docker ps")
        self.now[0] += 300
        self.channel.execute("10.0.0.6", "docker ps")

        self.now[0] += 400
        self.assertEqual(self.channel.reap_idle(), 1)
        first.close.assert_called_once()
        self.assertEqual(self.channel.connected_hosts(), ["10.0.0.6"])

        self.channel.close()
        second.close.assert_called_once()
        self.assertEqual(self.channel.connected_hosts(), [])

    def test_from_config(self):
        """Test channel settings come from AdminConfig."""
        from config import AdminConfig

        config = AdminConfig(
            ssh_user="admin", ssh_key_path="/k/id", ssh_port=2222, command_timeout=900.0
        )
        channel = RemoteExecutionChannel.from_config(config)

        self.assertEqual(channel.username, "admin")
        self.assertEqual(channel.key_filename, "/k/id")
        self.assertEqual(channel.port, 2222)
        self.assertEqual(channel.idle_timeout, 600.0)
        self.assertEqual(channel.command_timeout, 900.0)

    def test_from_config_no_command_timeout(self):
        """Test commands are unbounded unless a timeout is configured."""
        from config import AdminConfig

        channel = RemoteExecutionChannel.from_config(AdminConfig())

        self.assertIsNone(channel.command_timeout)


if __name__ == "__main__":
    unittest.main()
