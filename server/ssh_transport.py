"""SSH transport on top of paramiko.

paramiko is blocking, so every handshake and every command runs in a worker
thread. The coroutines in this module race that work against a deadline; the
loser of the race is never awaited again but is always cleaned up once it
finishes (a late handshake closes its connection, an abandoned command closes
its channel).
"""

import asyncio
import io
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import paramiko

from server.connection_policy import ConnectionParameters
from shared.protocol import (
    ConnectTimeoutError,
    ExecTimeoutError,
    KeyResolutionError,
    SSHTransportError,
)

logger = logging.getLogger("mcp_ssh.transport")

KEEPALIVE_INTERVAL = 30  # seconds
POLL_INTERVAL = 0.05  # seconds between channel polls
READ_CHUNK = 32768

# Key classes tried in order when parsing inline key material
KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

# Errors raised by paramiko and the socket layer for a failed connection or channel
TRANSPORT_ERRORS = (paramiko.SSHException, OSError, EOFError)


@dataclass
class CommandOutput:
    """Collected output of one remote command."""

    stdout: str
    stderr: str
    exit_code: int | None
    exit_signal: str | None


def load_private_key(material: str, passphrase: str | None = None) -> paramiko.PKey:
    """
    Parse private key material.

    Raises:
        KeyResolutionError: If no supported key type accepts the material
    """
    for key_class in KEY_TYPES:
        try:
            return key_class.from_private_key(io.StringIO(material), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise KeyResolutionError(
                "<configured key>", "key is encrypted and no passphrase is configured"
            )
        except (paramiko.SSHException, ValueError) as e:
            logger.debug(f"Key is not {key_class.__name__}: {e}")
    raise KeyResolutionError("<configured key>", "unsupported key type or wrong passphrase")


class SSHConnection:
    """One paramiko client plus the blocking primitives run in worker threads."""

    def __init__(self, params: ConnectionParameters):
        self.params = params
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        self._closed = False

    def open(self) -> None:
        """Connect and authenticate (blocking)."""
        params = self.params
        timeout = params.connect_timeout_ms / 1000

        connect_kwargs = {
            "hostname": params.host,
            "port": params.port,
            "username": params.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            # Credentials come from configuration only
            "allow_agent": False,
            "look_for_keys": False,
        }
        if params.password:
            connect_kwargs["password"] = params.password
        if params.private_key:
            connect_kwargs["pkey"] = load_private_key(params.private_key, params.passphrase)

        logger.info(f"Opening SSH connection to {params.username}@{params.host}:{params.port}")
        self._client.connect(**connect_kwargs)

        transport = self._client.get_transport()
        if transport:
            transport.set_keepalive(KEEPALIVE_INTERVAL)

    @property
    def is_active(self) -> bool:
        """True while the underlying transport is connected."""
        if self._closed:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def run(self, command: str, abandoned: threading.Event | None = None) -> CommandOutput | None:
        """
        Execute one command on a fresh channel (blocking).

        Polls stdout and stderr until the remote side sends EOF and an exit
        status, or closes the channel. Returns None if ``abandoned`` is set
        before completion; a command abandoned before this thread starts is
        never sent.
        """
        if abandoned is not None and abandoned.is_set():
            logger.debug(f"Dropping command abandoned before start: {command[:100]}")
            return None

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("SSH connection is not active")

        channel = transport.open_session()
        try:
            channel.exec_command(command)
            stdout = bytearray()
            stderr = bytearray()

            while True:
                if abandoned is not None and abandoned.is_set():
                    logger.debug(f"Abandoning channel for: {command[:100]}")
                    return None
                received = self._drain(channel, stdout, stderr)
                if channel.closed or (channel.exit_status_ready() and channel.eof_received):
                    self._drain(channel, stdout, stderr)
                    break
                if not received:
                    time.sleep(POLL_INTERVAL)

            exit_code = channel.recv_exit_status() if channel.exit_status_ready() else None
            if exit_code == -1:
                # paramiko reports -1 when the server sent no exit status
                exit_code = None

            return CommandOutput(
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
                exit_code=exit_code,
                exit_signal=None,
            )
        finally:
            channel.close()

    @staticmethod
    def _drain(channel: paramiko.Channel, stdout: bytearray, stderr: bytearray) -> bool:
        """Read everything currently buffered on both streams."""
        received = False
        while channel.recv_ready():
            chunk = channel.recv(READ_CHUNK)
            if not chunk:
                break
            stdout.extend(chunk)
            received = True
        while channel.recv_stderr_ready():
            chunk = channel.recv_stderr(READ_CHUNK)
            if not chunk:
                break
            stderr.extend(chunk)
            received = True
        return received

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        self._closed = True
        try:
            self._client.close()
        except Exception as e:
            logger.warning(f"Error closing SSH connection to {self.params.host}: {e}")


def _discard(task: asyncio.Future, cleanup: Callable[[], None] | None = None) -> None:
    """Let a task that lost its race finish in the background, then clean up."""

    def _finished(done: asyncio.Future) -> None:
        if not done.cancelled() and done.exception() is not None:
            logger.debug(f"Abandoned SSH operation failed: {done.exception()}")
        if cleanup:
            cleanup()

    task.add_done_callback(_finished)


async def establish(params: ConnectionParameters) -> SSHConnection:
    """
    Open a connection, racing the handshake against ``params.connect_timeout_ms``.

    Raises:
        ConnectTimeoutError: Handshake did not complete in time
        SSHTransportError: Handshake or authentication failed
        KeyResolutionError: Key material could not be parsed
    """
    connection = SSHConnection(params)
    task = asyncio.ensure_future(asyncio.to_thread(connection.open))

    try:
        done, _ = await asyncio.wait({task}, timeout=params.connect_timeout_ms / 1000)
    except asyncio.CancelledError:
        _discard(task, connection.close)
        raise

    if task not in done:
        logger.warning(
            f"SSH handshake with {params.host}:{params.port} timed out "
            f"after {params.connect_timeout_ms} ms"
        )
        # A late success is closed as soon as it lands
        _discard(task, connection.close)
        raise ConnectTimeoutError(params.host, params.connect_timeout_ms)

    try:
        task.result()
    except KeyResolutionError:
        connection.close()
        raise
    except TimeoutError:
        connection.close()
        raise ConnectTimeoutError(params.host, params.connect_timeout_ms)
    except TRANSPORT_ERRORS as e:
        connection.close()
        logger.warning(f"SSH connection to {params.host}:{params.port} failed: {e}")
        raise SSHTransportError(params.host, str(e) or type(e).__name__)

    return connection


async def run_command(
    connection: SSHConnection,
    command: str,
    timeout_ms: int,
    release: Callable[[], None] | None = None,
) -> CommandOutput:
    """
    Run one command, racing it against ``timeout_ms``.

    Args:
        connection: An established connection
        command: Fully composed command line
        timeout_ms: Execution deadline
        release: Called once the worker thread is finished with the channel,
            whatever the outcome (used to close one-shot connections)

    Raises:
        ExecTimeoutError: Deadline expired; partial output is discarded
        SSHTransportError: Channel could not be opened or failed mid-stream
    """
    abandoned = threading.Event()
    task = asyncio.ensure_future(asyncio.to_thread(connection.run, command, abandoned))

    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    except asyncio.CancelledError:
        abandoned.set()
        _discard(task, release)
        raise

    if task not in done:
        abandoned.set()
        _discard(task, release)
        raise ExecTimeoutError(command, timeout_ms)

    try:
        return task.result()
    except TRANSPORT_ERRORS as e:
        raise SSHTransportError(connection.params.host, str(e) or type(e).__name__)
    finally:
        if release:
            release()
