"""Run commands over registered sessions or one-shot connections."""

import asyncio
import logging
from dataclasses import dataclass, replace

from server import ssh_transport
from server.activity_log import ActivityLog, format_exec_body
from server.command_builder import build_command
from server.config import Settings
from server.connection_policy import ConnectionPolicy
from server.normalizer import find_field
from server.session_registry import SessionRegistry
from shared.protocol import TOOL_EXEC, ExecTimeoutError

logger = logging.getLogger("mcp_ssh.executor")

# Legacy argument name accepted when "command" is absent
LEGACY_COMMAND_FIELD = "cmd"


@dataclass
class ExecutionRequest:
    """A normalized request to run one command."""

    command: str
    timeout_ms: int
    cwd: str | None = None
    session_id: str | None = None


@dataclass
class ExecutionResult:
    """Outcome of one command; absent exit code or signal stay None."""

    stdout: str
    stderr: str
    exit_code: int | None
    exit_signal: str | None
    command_sent: str

    def to_dict(self) -> dict:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "exitSignal": self.exit_signal,
            "commandSent": self.command_sent,
        }


def positive_int(value) -> int | None:
    """Return a positive number as int; anything else (bools included) as None."""
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return int(value)
    return None


def resolve_command(payload: dict, arguments, default_command: str = "") -> str | None:
    """
    Find the command text.

    Order: ``command``, legacy ``cmd``, a ``command`` field anywhere in the raw
    argument envelopes, then the configured default command.
    """
    for value in (payload.get("command"), payload.get(LEGACY_COMMAND_FIELD)):
        if isinstance(value, str) and value:
            return value
    return find_field(arguments, "command") or default_command or None


def build_request(payload: dict, arguments, settings: Settings) -> ExecutionRequest | None:
    """
    Build an ExecutionRequest from normalized and raw arguments.

    Returns:
        None when no command text can be found
    """
    command = resolve_command(payload, arguments, settings.default_command)
    if not command:
        return None

    cwd = payload.get("cwd")
    session_id = payload.get("sessionId")

    return ExecutionRequest(
        command=command,
        timeout_ms=positive_int(payload.get("timeoutMs")) or settings.exec_timeout_ms,
        cwd=cwd if isinstance(cwd, str) and cwd else None,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
    )


def diagnostic_result(payload: dict, arguments) -> dict:
    """Describe a call that carried no command, so the caller can see what arrived."""
    return {
        "error": "No command was provided for execution.",
        "received": payload,
        "receivedRaw": arguments if arguments is not None else {},
        "receivedType": type(arguments).__name__,
    }


class CommandExecutor:
    """Execute requests in session-bound or one-shot mode."""

    def __init__(
        self,
        settings: Settings,
        policy: ConnectionPolicy,
        registry: SessionRegistry,
        activity_log: ActivityLog,
    ):
        self._settings = settings
        self._policy = policy
        self._registry = registry
        self._activity_log = activity_log

    def compose(self, request: ExecutionRequest) -> str:
        return build_command(
            request.command,
            request.cwd,
            lang=self._settings.remote_lang,
            lc_all=self._settings.remote_lc_all,
        )

    async def execute(self, request: ExecutionRequest, payload: dict | None = None) -> ExecutionResult:
        """
        Run a request.

        Uses the registered session when ``request.session_id`` is Ready;
        otherwise opens a one-shot connection from configuration and closes it
        once the command stream has finished.

        Args:
            request: The execution request
            payload: Normalized caller arguments, checked by the connection
                policy in one-shot mode

        Raises:
            ExecTimeoutError, ConnectTimeoutError, SSHTransportError,
            PolicyViolationError, KeyResolutionError
        """
        command = self.compose(request)

        if self._registry.is_ready(request.session_id):
            result = await self._execute_in_session(request, command)
        else:
            if request.session_id:
                logger.info(f"Session {request.session_id} is not ready, running one-shot")
            result = await self._execute_one_shot(request, command, payload or {})

        self._activity_log.write_block(
            f"{TOOL_EXEC} {command}", format_exec_body(result.stdout, result.stderr)
        )
        return result

    async def _execute_in_session(self, request: ExecutionRequest, command: str) -> ExecutionResult:
        session_id = request.session_id
        loop = asyncio.get_running_loop()
        deadline = loop.time() + request.timeout_ms / 1000

        # Time spent queued behind other commands counts against the deadline
        lock = self._registry.lock(session_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=request.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.warning(f"Session {session_id} busy past the {request.timeout_ms} ms deadline")
            raise ExecTimeoutError(command, request.timeout_ms)

        try:
            connection = self._registry.lookup(session_id)
            remaining_ms = max(1, int((deadline - loop.time()) * 1000))
            if connection is None:
                # Closed while waiting for the lock
                return await self._execute_one_shot(
                    replace(request, timeout_ms=remaining_ms), command, {}
                )
            logger.debug(f"Session {session_id}: running {command[:100]}")
            output = await ssh_transport.run_command(connection, command, remaining_ms)
        finally:
            lock.release()
        return self._result(output, command)

    async def _execute_one_shot(
        self, request: ExecutionRequest, command: str, payload: dict
    ) -> ExecutionResult:
        params = self._policy.resolve_parameters(payload)
        connection = await ssh_transport.establish(params)
        logger.debug(f"One-shot connection to {params.host}: running {command[:100]}")
        output = await ssh_transport.run_command(
            connection, command, request.timeout_ms, release=connection.close
        )
        return self._result(output, command)

    @staticmethod
    def _result(output: ssh_transport.CommandOutput, command: str) -> ExecutionResult:
        return ExecutionResult(
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=output.exit_code,
            exit_signal=output.exit_signal,
            command_sent=command,
        )
