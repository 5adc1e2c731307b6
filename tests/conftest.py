"""Shared fakes for provider, SSH transport and source-control collaborators."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Sequence

import pytest

from devbox.collaborators import InMemoryInstanceRegistry, StaticIdentityDirectory
from devbox.config import Settings
from devbox.engine import StageRegistry
from devbox.exec import ExecutionTarget, RemoteProcess, ScriptExecutor, ShellTransport, SshCredential
from devbox.orchestrator import ProvisioningOrchestrator, ProvisioningRequest, registry
from devbox.progress import ProgressTracker
from devbox.providers.base import (
    CloudProvider,
    CreatedInstance,
    InstanceInfo,
    InstanceRef,
    InstanceSpec,
    InstanceStatus,
    NetworkInterface,
    ProviderType,
    SourceControlProvider,
)
from devbox.readiness import ReadinessProber
from devbox.sessions import SessionRegistry

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFakeKeyMaterialForTests devbox-box1"


class FakeCloudProvider(CloudProvider):
    """Replays a scripted sequence of instance statuses.

    Entries in ``statuses`` may be status strings or exceptions to raise.
    The last entry repeats once the sequence is exhausted.
    """

    def __init__(
        self,
        statuses: Sequence[str | Exception] = ("PROVISIONING", "STAGING", "RUNNING"),
        *,
        address: str | None = "203.0.113.10",
        instance_id: str = "7283645510923",
        create_error: Exception | None = None,
    ) -> None:
        self.statuses = list(statuses)
        self.address = address
        self.instance_id = instance_id
        self.create_error = create_error
        self.created: list[InstanceSpec] = []
        self.get_calls = 0
        self.closed = False

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GCE

    async def create_instance(self, spec: InstanceSpec) -> CreatedInstance:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec)
        return CreatedInstance(id=self.instance_id, name=spec.name)

    async def get_instance(self, ref: InstanceRef) -> InstanceInfo:
        self.get_calls += 1
        status = self.statuses[min(self.get_calls, len(self.statuses)) - 1]
        if isinstance(status, Exception):
            raise status
        external = (self.address,) if self.address else ()
        return InstanceInfo(
            id=self.instance_id,
            name=ref.name,
            status=InstanceStatus.parse(status),
            network_interfaces=(NetworkInterface("default", "10.128.0.2", external),),
        )

    async def aclose(self) -> None:
        self.closed = True


class FakeSourceControl(SourceControlProvider):
    def __init__(self, *, linked: bool = True, error: Exception | None = None) -> None:
        self.linked = linked
        self.error = error
        self.registered: list[tuple[str, str, str]] = []

    async def register_public_key(self, user_id: str, title: str, key: str) -> bool:
        if self.error is not None:
            raise self.error
        if not self.linked:
            return False
        self.registered.append((user_id, title, key))
        return True

    async def remove_public_key(self, user_id: str, key_id: int) -> bool:
        return self.linked


class FakeProcess(RemoteProcess):
    """Emits queued chunks one per poll, then runs for ``runtime`` seconds."""

    def __init__(
        self,
        chunks: Sequence[tuple[str, str]] = (),
        *,
        exit_code: int = 0,
        runtime: float = 0.0,
        pid: int | None = 4242,
        terminate_delay: float = 0.0,
    ) -> None:
        self._pending = list(chunks)
        self._exit_code = exit_code
        self._runtime = runtime
        self._started = time.monotonic()
        self._terminate_delay = terminate_delay
        self._killed = threading.Event()
        self.pid = pid
        self.terminated_with: float | None = None
        self.closed = False

    def poll_output(self, timeout: float) -> list[tuple[str, str]]:
        if self._pending:
            return [self._pending.pop(0)]
        remaining = self._started + self._runtime - time.monotonic()
        if remaining > 0:
            self._killed.wait(min(timeout, remaining))
        return []

    def exit_status(self) -> int | None:
        if self._pending:
            return None
        if self._killed.is_set():
            return 143
        if time.monotonic() >= self._started + self._runtime:
            return self._exit_code
        return None

    def terminate(self, grace: float) -> None:
        self.terminated_with = grace
        if self._terminate_delay:
            time.sleep(self._terminate_delay)
        self._killed.set()

    def close(self) -> None:
        self.closed = True


class FakeTransport(ShellTransport):
    """Hands out FakeProcess objects built by ``factory(script)``."""

    def __init__(self, factory: Callable[[str], RemoteProcess] | None = None) -> None:
        self.factory = factory or (lambda script: FakeProcess())
        self.started: list[tuple[str, str]] = []
        self.processes: list[RemoteProcess] = []
        self._lock = threading.Lock()

    def start(self, target: ExecutionTarget, host: str, script: str) -> RemoteProcess:
        process = self.factory(script)
        with self._lock:
            self.started.append((host, script))
            self.processes.append(process)
        return process

    def scripts(self) -> list[str]:
        with self._lock:
            return [script for _, script in self.started]


def setup_factory(
    *,
    keygen_output: str = f"Generating key...\n{PUBLIC_KEY}\n",
    boot_exit: int = 0,
) -> Callable[[str], RemoteProcess]:
    """Process factory that recognises the bootstrap scripts by content."""

    def factory(script: str) -> RemoteProcess:
        if "ssh-keygen" in script:
            return FakeProcess([("stdout", keygen_output)])
        if "git clone" in script:
            return FakeProcess([("stdout", "Cloning into 'hello'...\n")])
        return FakeProcess([("stdout", "booted\n")], exit_code=boot_exit)

    return factory


class ConnectionRecorder:
    """Stand-in for asyncio.open_connection that fails ``failures`` times."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, int]] = []

    async def __call__(self, host: str, port: int) -> tuple[object, _FakeWriter]:
        self.calls.append((host, port))
        if len(self.calls) <= self.failures:
            raise ConnectionRefusedError(f"connect to {host}:{port} refused")
        return object(), _FakeWriter()


class _FakeWriter:
    def close(self) -> None:
        pass

    async def wait_closed(self) -> None:
        pass


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class Harness:
    """Orchestrator wired to fakes, with the fakes exposed for assertions."""

    def __init__(
        self,
        *,
        provider: FakeCloudProvider | None = None,
        transport: FakeTransport | None = None,
        source_control: SourceControlProvider | None = None,
        connections: ConnectionRecorder | None = None,
        settings: Settings | None = None,
        stages: StageRegistry = registry,
    ) -> None:
        self.settings = settings or Settings(
            running_max_attempts=5,
            ssh_max_attempts=3,
            abort_grace=0.5,
        )
        self.provider = provider or FakeCloudProvider()
        self.transport = transport or FakeTransport(setup_factory())
        self.source_control = source_control if source_control is not None else FakeSourceControl()
        self.connections = connections or ConnectionRecorder()
        self.sleeps = SleepRecorder()
        self.tracker = ProgressTracker()
        self.sessions = SessionRegistry()
        self.instances = InMemoryInstanceRegistry()
        self.orchestrator = ProvisioningOrchestrator(
            provider=self.provider,
            tracker=self.tracker,
            sessions=self.sessions,
            prober=ReadinessProber(
                self.provider,
                sleep=self.sleeps,
                open_connection=self.connections,
            ),
            executor=ScriptExecutor(
                self.provider,
                transport=self.transport,
                abort_grace=self.settings.abort_grace,
            ),
            instances=self.instances,
            identity=StaticIdentityDirectory(
                default_login="alice",
                git_identities={"user-1": ("alice@example.com", "Alice Example")},
            ),
            credential=SshCredential(private_key_path="/tmp/id_ed25519"),
            settings=self.settings,
            source_control=self.source_control,
            stages=stages,
        )

    def provision(self, request: ProvisioningRequest) -> tuple[str, bool]:
        async def go() -> tuple[str, bool]:
            tracking_id = self.tracker.start_tracking()
            ok = await self.orchestrator.run(request, tracking_id)
            return tracking_id, ok

        return asyncio.run(go())


def make_request(**overrides: object) -> ProvisioningRequest:
    values: dict[str, object] = {
        "record_id": "rec-1",
        "organization_id": "org-1",
        "user_id": "user-1",
        "name": "box1",
        "project_id": "demo-project",
        "zone": "us-central1-a",
    }
    values.update(overrides)
    return ProvisioningRequest(**values)  # type: ignore[arg-type]


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def target() -> ExecutionTarget:
    return ExecutionTarget(
        ref=InstanceRef("demo-project", "us-central1-a", "box1"),
        username="alice",
        credential=SshCredential(private_key_path="/tmp/id_ed25519"),
        host="203.0.113.10",
    )
