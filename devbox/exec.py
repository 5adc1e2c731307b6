"""
Remote script execution over SSH with streaming output.

The blocking transport work (paramiko) runs in a worker thread. Output
chunks travel back to the event loop through an asyncio queue, where they
are captured and handed to the caller's ``on_output`` callback in the order
they arrived. A CancellationToken, set either by an external abort or by the
timeout timer, makes the worker signal the remote process tree and return.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import io
import logging
import time
import typing as t
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import paramiko

from ._types import OutputStream
from .cancellation import CancelReason, CancellationToken
from .errors import AuthenticationError, TransportError
from .providers.base import CloudProvider, InstanceRef
from .scripts import PID_MARKER, remote_shell_command, terminate_command

if t.TYPE_CHECKING:
    from .sessions import ExecutionSession

logger = logging.getLogger(__name__)

OutputCallback = t.Callable[[OutputStream, str], "None | t.Awaitable[None]"]

_POLL_INTERVAL = 0.1
_READ_SIZE = 32 * 1024


@dataclass(slots=True, frozen=True)
class SshCredential:
    """Private key (path or PEM text) and/or password for the login user."""

    private_key_path: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    password: str | None = None


@dataclass(slots=True, frozen=True)
class ExecutionTarget:
    ref: InstanceRef
    username: str
    credential: SshCredential
    host: str | None = None
    port: int = 22


class ExecutionOutcome(Enum):
    EXITED = "exited"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int | None
    duration_ms: int
    outcome: ExecutionOutcome = ExecutionOutcome.EXITED

    @property
    def succeeded(self) -> bool:
        return self.outcome is ExecutionOutcome.EXITED and self.exit_code == 0

    @property
    def aborted(self) -> bool:
        """True for both external aborts and timeouts."""
        return self.outcome is not ExecutionOutcome.EXITED

    def describe(self) -> str:
        match self.outcome:
            case ExecutionOutcome.ABORTED:
                return "aborted"
            case ExecutionOutcome.TIMED_OUT:
                return f"timed out after {self.duration_ms / 1000:.1f}s"
        return f"exit code {self.exit_code}"


class RemoteProcess(ABC):
    """Blocking handle on one running remote command; used from a worker thread."""

    pid: int | None = None

    @abstractmethod
    def poll_output(self, timeout: float) -> list[tuple[OutputStream, str]]:
        """Return chunks that arrive within ``timeout`` seconds (possibly none)."""
        ...

    @abstractmethod
    def exit_status(self) -> int | None:
        """Exit code once the process has exited and all output was read."""
        ...

    @abstractmethod
    def terminate(self, grace: float) -> None:
        """Signal the remote process tree, escalating after ``grace`` seconds."""
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class ShellTransport(ABC):
    @abstractmethod
    def start(self, target: ExecutionTarget, host: str, script: str) -> RemoteProcess:
        """Connect to ``host`` and submit ``script`` to a remote shell.

        Raises:
            AuthenticationError: Login rejected.
            TransportError: Connection refused, reset or timed out.
        """
        ...


def load_private_key(text: str, passphrase: str | None = None) -> paramiko.PKey:
    last_error: Exception | None = None
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.SSHException as exc:
            last_error = exc
    raise AuthenticationError(f"Unsupported or invalid private key: {last_error}")


class ParamikoProcess(RemoteProcess):
    """Exec channel running ``bash -l -s`` with the script on stdin."""

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel) -> None:
        self._client = client
        self._channel = channel
        self._decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")("replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")("replace"),
        }
        # stderr is held back until the pid marker line has been consumed.
        self._stderr_head = ""
        self._marker_seen = False
        self.pid = None

    def poll_output(self, timeout: float) -> list[tuple[OutputStream, str]]:
        deadline = time.monotonic() + timeout
        while True:
            chunks = self._read_available()
            if chunks or self._channel.exit_status_ready() or self._channel.closed:
                if not chunks and not self._marker_seen and self._stderr_head:
                    chunks.append(("stderr", self._stderr_head))
                    self._stderr_head = ""
                    self._marker_seen = True
                return chunks
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return chunks
            time.sleep(min(0.02, remaining))

    def exit_status(self) -> int | None:
        channel = self._channel
        if not channel.exit_status_ready():
            return None
        if channel.recv_ready() or channel.recv_stderr_ready():
            return None
        return channel.recv_exit_status()

    def terminate(self, grace: float) -> None:
        pid = self.pid
        if pid is None:
            logger.warning("Remote pid unknown; closing channel without signalling")
        else:
            self._signal(pid, "TERM", grace)
            deadline = time.monotonic() + grace
            while time.monotonic() < deadline:
                if self._channel.exit_status_ready():
                    break
                time.sleep(0.05)
            else:
                self._signal(pid, "KILL", grace)
        self._channel.close()

    def close(self) -> None:
        try:
            self._channel.close()
        finally:
            self._client.close()

    def _signal(self, pid: int, signal_name: str, grace: float) -> None:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            logger.warning("SSH transport gone; cannot send %s to %d", signal_name, pid)
            return
        try:
            channel = transport.open_session(timeout=grace)
            channel.exec_command(terminate_command(pid, signal_name))
            deadline = time.monotonic() + grace
            while not channel.exit_status_ready() and time.monotonic() < deadline:
                time.sleep(0.05)
            channel.close()
        except (paramiko.SSHException, OSError) as exc:
            logger.warning("Failed to send %s to remote pid %d: %s", signal_name, pid, exc)
        else:
            logger.info("Sent %s to remote process tree %d", signal_name, pid)

    def _read_available(self) -> list[tuple[OutputStream, str]]:
        chunks: list[tuple[OutputStream, str]] = []
        try:
            while self._channel.recv_ready():
                text = self._decoders["stdout"].decode(self._channel.recv(_READ_SIZE))
                if text:
                    chunks.append(("stdout", text))
            while self._channel.recv_stderr_ready():
                text = self._decoders["stderr"].decode(self._channel.recv_stderr(_READ_SIZE))
                text = self._strip_marker(text)
                if text:
                    chunks.append(("stderr", text))
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"SSH channel failed: {exc}") from exc
        return chunks

    def _strip_marker(self, text: str) -> str:
        if self._marker_seen:
            return text
        self._stderr_head += text
        line, newline, rest = self._stderr_head.partition("\n")
        if not newline:
            if PID_MARKER.startswith(line[: len(PID_MARKER)]):
                return ""
            # Not our marker after all; stop holding stderr back.
            self._marker_seen = True
            self._stderr_head = ""
            return line
        self._marker_seen = True
        self._stderr_head = ""
        if line.startswith(PID_MARKER):
            try:
                self.pid = int(line[len(PID_MARKER):])
            except ValueError:
                logger.warning("Malformed pid marker: %r", line)
            return rest
        return f"{line}{newline}{rest}"


class ParamikoTransport(ShellTransport):
    def __init__(self, *, connect_timeout: float = 30.0, keepalive: int = 10) -> None:
        self._connect_timeout = connect_timeout
        self._keepalive = keepalive

    def start(self, target: ExecutionTarget, host: str, script: str) -> ParamikoProcess:
        client = self._connect(target, host)
        try:
            transport = client.get_transport()
            if transport is None:
                raise TransportError(f"No SSH transport to {host}")
            transport.set_keepalive(self._keepalive)
            channel = transport.open_session(timeout=self._connect_timeout)
            channel.exec_command(remote_shell_command())
            payload = script if script.endswith("\n") else f"{script}\n"
            channel.sendall(payload.encode("utf-8"))
            channel.shutdown_write()
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(f"Failed to start remote shell on {host}: {exc}") from exc
        except TransportError:
            client.close()
            raise
        return ParamikoProcess(client, channel)

    def _connect(self, target: ExecutionTarget, host: str) -> paramiko.SSHClient:
        credential = target.credential
        kwargs: dict[str, t.Any] = {
            "hostname": host,
            "port": target.port,
            "username": target.username,
            "timeout": self._connect_timeout,
            "banner_timeout": self._connect_timeout,
            "auth_timeout": self._connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if credential.private_key:
            kwargs["pkey"] = load_private_key(credential.private_key, credential.passphrase)
        elif credential.private_key_path:
            kwargs["key_filename"] = credential.private_key_path
            kwargs["passphrase"] = credential.passphrase
        if credential.password:
            kwargs["password"] = credential.password

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        logger.info("Connecting to %s@%s:%d", target.username, host, target.port)
        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise AuthenticationError(
                f"SSH authentication failed for {target.username}@{host}: {exc}"
            ) from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise TransportError(f"SSH connection to {host}:{target.port} failed: {exc}") from exc
        return client


class ScriptExecutor:
    """Runs scripts on instances and streams their output."""

    def __init__(
        self,
        provider: CloudProvider | None = None,
        *,
        transport: ShellTransport | None = None,
        abort_grace: float = 5.0,
    ) -> None:
        self._provider = provider
        self._transport = transport or ParamikoTransport()
        self._abort_grace = abort_grace

    async def run(
        self,
        target: ExecutionTarget,
        script: str,
        *,
        timeout: float,
        on_output: OutputCallback | None = None,
        token: CancellationToken | None = None,
        session: ExecutionSession | None = None,
    ) -> ExecutionResult:
        """Execute ``script`` on ``target`` and return its captured output.

        Non-zero exits are reported in the result, not raised. Timeouts and
        aborts return promptly with the output streamed so far and outcome
        TIMED_OUT or ABORTED.
        """
        if token is None:
            token = session.token if session is not None else CancellationToken()
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        host = target.host or await self._resolve_host(target)

        queue: asyncio.Queue[tuple[OutputStream, str] | None] = asyncio.Queue()

        def emit(stream: OutputStream, text: str) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, (stream, text))

        timer = loop.call_later(timeout, token.cancel, CancelReason.TIMEOUT)
        worker = asyncio.ensure_future(
            asyncio.to_thread(self._drive, target, host, script, token, emit, session)
        )
        worker.add_done_callback(lambda _: queue.put_nowait(None))

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        abandon_at: float | None = None
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    if token.cancelled:
                        if abandon_at is None:
                            abandon_at = loop.time() + self._abort_grace
                        elif loop.time() >= abandon_at:
                            logger.warning(
                                "Remote command on %s did not stop within %.1fs; abandoning it",
                                host, self._abort_grace,
                            )
                            break
                    continue
                if item is None:
                    break
                stream, text = item
                (stdout_parts if stream == "stdout" else stderr_parts).append(text)
                if on_output is not None:
                    await _deliver(on_output, stream, text)
        except asyncio.CancelledError:
            # The worker keeps running on its own; the token makes it kill the remote tree.
            token.cancel(CancelReason.ABORTED)
            worker.add_done_callback(_log_abandoned_failure)
            logger.info("Run on %s cancelled; terminating remote command", target.ref)
            raise
        finally:
            timer.cancel()

        exit_code: int | None = None
        if worker.done():
            exit_code = worker.result()
        else:
            worker.add_done_callback(_log_abandoned_failure)

        duration_ms = int((time.monotonic() - started) * 1000)
        if exit_code is None:
            outcome = (
                ExecutionOutcome.TIMED_OUT
                if token.reason is CancelReason.TIMEOUT
                else ExecutionOutcome.ABORTED
            )
        else:
            outcome = ExecutionOutcome.EXITED
        result = ExecutionResult(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=exit_code,
            duration_ms=duration_ms,
            outcome=outcome,
        )
        logger.info("Script on %s finished: %s (%dms)", target.ref, result.describe(), duration_ms)
        return result

    def _drive(
        self,
        target: ExecutionTarget,
        host: str,
        script: str,
        token: CancellationToken,
        emit: t.Callable[[OutputStream, str], None],
        session: ExecutionSession | None,
    ) -> int | None:
        """Worker-thread loop. Returns the exit code, or None when cancelled."""
        if token.cancelled:
            return None
        process = self._transport.start(target, host, script)
        if session is not None:
            session.process = process
        try:
            while True:
                if token.cancelled:
                    process.terminate(self._abort_grace / 2)
                    return None
                try:
                    chunks = process.poll_output(_POLL_INTERVAL)
                except TransportError:
                    if token.cancelled:
                        return None
                    raise
                for stream, text in chunks:
                    emit(stream, text)
                if not chunks:
                    status = process.exit_status()
                    if status is not None:
                        return status
        finally:
            process.close()
            if session is not None:
                session.process = None

    async def _resolve_host(self, target: ExecutionTarget) -> str:
        if self._provider is None:
            raise TransportError(f"No host given for {target.ref} and no provider to resolve it")
        info = await self._provider.get_instance(target.ref)
        address = info.public_address
        if not address:
            raise TransportError(f"Instance {target.ref} has no external IP address")
        return address


async def _deliver(callback: OutputCallback, stream: OutputStream, text: str) -> None:
    try:
        outcome = callback(stream, text)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception("Output callback failed for %s chunk", stream)


def _log_abandoned_failure(future: asyncio.Future[int | None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Abandoned remote command later failed: %s", exc)
