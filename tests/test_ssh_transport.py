"""Tests for server/ssh_transport.py - paramiko connections run in worker threads."""

import asyncio
import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from server.connection_policy import ConnectionParameters
from server.ssh_transport import (
    CommandOutput,
    SSHConnection,
    establish,
    load_private_key,
    run_command,
)
from shared.protocol import (
    ConnectTimeoutError,
    ExecTimeoutError,
    KeyResolutionError,
    SSHTransportError,
)


class FakeChannel:
    """Scripted stand-in for a paramiko exec channel."""

    def __init__(self, stdout=(), stderr=(), exit_code=0, closes=False):
        self._stdout = list(stdout)
        self._stderr = list(stderr)
        self._exit_code = exit_code
        self._closes = closes
        self.command = None
        self.closed = False

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self._stdout)

    def recv(self, size):
        return self._stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self._stderr)

    def recv_stderr(self, size):
        return self._stderr.pop(0)

    @property
    def eof_received(self):
        return not self._stdout and not self._stderr

    def exit_status_ready(self):
        if self._closes and self.eof_received:
            # Remote closed the channel without sending a status
            self.closed = True
            return False
        return self._exit_code is not None and self.eof_received

    def recv_exit_status(self):
        return self._exit_code

    def close(self):
        self.closed = True


class HangingChannel(FakeChannel):
    """Channel whose command never finishes."""

    def exit_status_ready(self):
        return False


def make_params(**overrides):
    values = {
        "host": "box.example",
        "port": 22,
        "username": "deploy",
        "password": "secret",
        "connect_timeout_ms": 1000,
    }
    values.update(overrides)
    return ConnectionParameters(**values)


@pytest.fixture
def mock_client():
    with patch("server.ssh_transport.paramiko.SSHClient") as client_class:
        client = MagicMock()
        client_class.return_value = client
        client.get_transport.return_value.is_active.return_value = True
        yield client


def with_channel(client, channel):
    client.get_transport.return_value.open_session.return_value = channel
    return channel


@pytest.fixture(scope="module")
def rsa_key():
    return paramiko.RSAKey.generate(2048)


def key_material(key, password=None):
    buffer = io.StringIO()
    key.write_private_key(buffer, password=password)
    return buffer.getvalue()


class TestLoadPrivateKey:
    """Tests for load_private_key."""

    def test_rsa_key(self, rsa_key):
        loaded = load_private_key(key_material(rsa_key))
        assert isinstance(loaded, paramiko.RSAKey)
        assert loaded.get_fingerprint() == rsa_key.get_fingerprint()

    def test_encrypted_key_with_passphrase(self, rsa_key):
        loaded = load_private_key(key_material(rsa_key, "pp"), "pp")
        assert loaded.get_fingerprint() == rsa_key.get_fingerprint()

    def test_encrypted_key_without_passphrase(self, rsa_key):
        with pytest.raises(KeyResolutionError) as exc_info:
            load_private_key(key_material(rsa_key, "pp"))
        assert "passphrase" in exc_info.value.message

    def test_garbage(self):
        with pytest.raises(KeyResolutionError):
            load_private_key("not a key")


class TestSSHConnectionOpen:
    """Tests for SSHConnection.open."""

    def test_connect_with_password(self, mock_client):
        connection = SSHConnection(make_params(connect_timeout_ms=2500))

        connection.open()

        mock_client.set_missing_host_key_policy.assert_called_once()
        kwargs = mock_client.connect.call_args.kwargs
        assert kwargs["hostname"] == "box.example"
        assert kwargs["port"] == 22
        assert kwargs["username"] == "deploy"
        assert kwargs["password"] == "secret"
        assert kwargs["timeout"] == 2.5
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False
        assert "pkey" not in kwargs
        mock_client.get_transport.return_value.set_keepalive.assert_called_with(30)

    def test_connect_with_key(self, mock_client):
        connection = SSHConnection(make_params(password=None, private_key="KEY", passphrase="pp"))

        with patch("server.ssh_transport.load_private_key") as mock_load:
            connection.open()

        mock_load.assert_called_once_with("KEY", "pp")
        kwargs = mock_client.connect.call_args.kwargs
        assert kwargs["pkey"] is mock_load.return_value
        assert "password" not in kwargs


class TestSSHConnectionRun:
    """Tests for SSHConnection.run."""

    def test_collects_output(self, mock_client):
        channel = with_channel(
            mock_client, FakeChannel(stdout=[b"hello ", b"world\n"], stderr=[b"warn\n"], exit_code=0)
        )

        output = SSHConnection(make_params()).run("echo hello world")

        assert channel.command == "echo hello world"
        assert output == CommandOutput(
            stdout="hello world\n", stderr="warn\n", exit_code=0, exit_signal=None
        )
        assert channel.closed

    def test_nonzero_exit(self, mock_client):
        with_channel(mock_client, FakeChannel(exit_code=3))
        assert SSHConnection(make_params()).run("exit 3").exit_code == 3

    def test_missing_exit_status(self, mock_client):
        with_channel(mock_client, FakeChannel(exit_code=-1))
        assert SSHConnection(make_params()).run("kill -9 $$").exit_code is None

    def test_closed_without_status(self, mock_client):
        with_channel(mock_client, FakeChannel(stdout=[b"partial"], exit_code=None, closes=True))

        output = SSHConnection(make_params()).run("cmd")

        assert output.stdout == "partial"
        assert output.exit_code is None

    def test_invalid_utf8_replaced(self, mock_client):
        with_channel(mock_client, FakeChannel(stdout=[b"ok \xff"]))
        assert SSHConnection(make_params()).run("cat bin").stdout == "ok \ufffd"

    def test_abandoned_mid_stream(self, mock_client):
        channel = with_channel(mock_client, HangingChannel())
        abandoned = threading.Event()
        channel.exec_command = lambda command: abandoned.set()

        assert SSHConnection(make_params()).run("sleep 100", abandoned) is None
        assert channel.closed

    def test_abandoned_before_start_is_never_sent(self, mock_client):
        abandoned = threading.Event()
        abandoned.set()

        assert SSHConnection(make_params()).run("rm -rf /data", abandoned) is None
        mock_client.get_transport.return_value.open_session.assert_not_called()

    def test_inactive_transport(self, mock_client):
        mock_client.get_transport.return_value.is_active.return_value = False

        with pytest.raises(paramiko.SSHException):
            SSHConnection(make_params()).run("ls")


class TestSSHConnectionLifecycle:
    """Tests for is_active and close."""

    def test_is_active(self, mock_client):
        connection = SSHConnection(make_params())
        assert connection.is_active

        mock_client.get_transport.return_value.is_active.return_value = False
        assert not connection.is_active

    def test_no_transport(self, mock_client):
        mock_client.get_transport.return_value = None
        assert not SSHConnection(make_params()).is_active

    def test_close(self, mock_client):
        connection = SSHConnection(make_params())

        connection.close()

        mock_client.close.assert_called_once()
        assert not connection.is_active

    def test_close_error_is_logged(self, mock_client):
        mock_client.close.side_effect = OSError("boom")
        SSHConnection(make_params()).close()  # Should not raise


class TestEstablish:
    """Tests for establish."""

    @pytest.mark.asyncio
    async def test_success(self, mock_client):
        connection = await establish(make_params())

        assert isinstance(connection, SSHConnection)
        mock_client.connect.assert_called_once()
        mock_client.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_authentication_failure(self, mock_client):
        mock_client.connect.side_effect = paramiko.AuthenticationException("Authentication failed.")

        with pytest.raises(SSHTransportError) as exc_info:
            await establish(make_params())

        assert exc_info.value.message == "Authentication failed."
        assert exc_info.value.details["host"] == "box.example"
        mock_client.close.assert_called()

    @pytest.mark.asyncio
    async def test_refused(self, mock_client):
        mock_client.connect.side_effect = ConnectionRefusedError(111, "Connection refused")

        with pytest.raises(SSHTransportError):
            await establish(make_params())

    @pytest.mark.asyncio
    async def test_socket_timeout(self, mock_client):
        mock_client.connect.side_effect = TimeoutError("timed out")

        with pytest.raises(ConnectTimeoutError):
            await establish(make_params())

    @pytest.mark.asyncio
    async def test_key_error_passes_through(self, mock_client):
        params = make_params(private_key="garbage")

        with pytest.raises(KeyResolutionError):
            await establish(params)

        mock_client.connect.assert_not_called()

    @pytest.mark.asyncio
    async def test_deadline(self, mock_client):
        mock_client.connect.side_effect = lambda **kwargs: time.sleep(0.3)

        with pytest.raises(ConnectTimeoutError) as exc_info:
            await establish(make_params(connect_timeout_ms=50))

        assert exc_info.value.details["timeout_ms"] == 50
        mock_client.close.assert_not_called()

        # The late handshake is closed once it lands
        await asyncio.sleep(0.6)
        mock_client.close.assert_called_once()


class TestRunCommand:
    """Tests for run_command."""

    def make_connection(self, run):
        connection = MagicMock()
        connection.params = make_params()
        connection.run.side_effect = run
        return connection

    @pytest.mark.asyncio
    async def test_success(self):
        expected = CommandOutput("out", "", 0, None)
        connection = self.make_connection(lambda command, abandoned: expected)
        release = MagicMock()

        output = await run_command(connection, "ls", 1000, release=release)

        assert output is expected
        release.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_abandons_channel(self):
        seen = {}

        def run(command, abandoned):
            seen["abandoned"] = abandoned
            abandoned.wait(5)
            return None

        connection = self.make_connection(run)
        release = MagicMock()

        with pytest.raises(ExecTimeoutError) as exc_info:
            await run_command(connection, "sleep 100", 50, release=release)

        assert exc_info.value.details["timeout_ms"] == 50
        assert seen["abandoned"].is_set()

        # Released once the worker thread returns
        await asyncio.sleep(0.3)
        release.assert_called_once()

    @pytest.mark.asyncio
    async def test_channel_failure(self):
        def run(command, abandoned):
            raise paramiko.SSHException("Channel closed.")

        connection = self.make_connection(run)
        release = MagicMock()

        with pytest.raises(SSHTransportError) as exc_info:
            await run_command(connection, "ls", 1000, release=release)

        assert exc_info.value.message == "Channel closed."
        release.assert_called_once()

    @pytest.mark.asyncio
    async def test_without_release(self):
        connection = self.make_connection(lambda command, abandoned: CommandOutput("", "", 0, None))
        assert (await run_command(connection, "true", 1000)).exit_code == 0

    @pytest.mark.asyncio
    async def test_timeout_while_queued_never_sends(self, mock_client):
        """A command whose deadline passes before a worker thread frees up is dropped."""
        loop = asyncio.get_running_loop()
        pool = ThreadPoolExecutor(max_workers=1)
        loop.set_default_executor(pool)
        blocker = loop.run_in_executor(None, time.sleep, 0.5)
        release = MagicMock()

        try:
            with pytest.raises(ExecTimeoutError):
                await run_command(SSHConnection(make_params()), "rm -rf /data", 100, release=release)

            await blocker
            await asyncio.sleep(0.2)
        finally:
            pool.shutdown(wait=True)

        mock_client.get_transport.return_value.open_session.assert_not_called()
        release.assert_called_once()
