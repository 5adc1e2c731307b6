"""
Runtime facade that owns the in-memory progress and session tables.

A DevboxService is built once per process and passed to whatever serves
requests (CLI, web handlers). It is the only place that wires collaborators
together.
"""

from __future__ import annotations

import asyncio
import logging
import typing as t
from collections.abc import AsyncIterator
from dataclasses import dataclass

from .collaborators import (
    IdentityDirectory,
    InMemoryInstanceRegistry,
    InstanceRegistry,
    StaticIdentityDirectory,
)
from .config import Settings
from .errors import ValidationError
from .exec import (
    ExecutionResult,
    ExecutionTarget,
    OutputCallback,
    ScriptExecutor,
    ShellTransport,
    SshCredential,
)
from .orchestrator import ProvisioningOrchestrator, ProvisioningRequest
from .progress import ProgressEvent, ProgressTracker
from .providers import GceProvider, GitHubProvider
from .providers.base import CloudProvider, InstanceRef, SourceControlProvider
from .readiness import ReadinessProber
from .sessions import ExecutionSession, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ScriptOwner:
    """Who is running an ad-hoc script, and against which instance record."""

    user_id: str
    organization_id: str
    instance_id: str | None = None


@dataclass(slots=True, frozen=True)
class ScriptHandle:
    session_id: str
    task: asyncio.Task[ExecutionResult]


class DevboxService:
    def __init__(
        self,
        provider: CloudProvider,
        *,
        credential: SshCredential,
        settings: Settings | None = None,
        source_control: SourceControlProvider | None = None,
        instances: InstanceRegistry | None = None,
        identity: IdentityDirectory | None = None,
        transport: ShellTransport | None = None,
        prober: ReadinessProber | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.provider = provider
        self.source_control = source_control
        self.tracker = ProgressTracker()
        self.sessions = SessionRegistry()
        self.instances = instances or InMemoryInstanceRegistry()
        self.identity = identity or StaticIdentityDirectory()
        self.credential = credential
        self.executor = ScriptExecutor(
            provider,
            transport=transport,
            abort_grace=self.settings.abort_grace,
        )
        self.orchestrator = ProvisioningOrchestrator(
            provider=provider,
            tracker=self.tracker,
            sessions=self.sessions,
            prober=prober or ReadinessProber(provider),
            executor=self.executor,
            instances=self.instances,
            identity=self.identity,
            credential=credential,
            settings=self.settings,
            source_control=source_control,
        )
        self._scripts: set[asyncio.Task[ExecutionResult]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: t.Any) -> DevboxService:
        """Build the GCE/GitHub-backed service described by ``settings``."""
        if not settings.gcp_access_token:
            raise ValidationError("DEVBOX_GCP_ACCESS_TOKEN is required")
        if not settings.ssh_key_path:
            raise ValidationError("DEVBOX_SSH_KEY_PATH is required")
        source_control = None
        if settings.github_token:
            token = settings.github_token
            source_control = GitHubProvider(lambda _user_id: token, base_url=settings.github_api_url)
        return cls(
            GceProvider(settings.gcp_access_token),
            credential=SshCredential(
                private_key_path=settings.ssh_key_path,
                passphrase=settings.ssh_key_passphrase,
            ),
            settings=settings,
            source_control=source_control,
            **kwargs,
        )

    # -- provisioning ---------------------------------------------------

    def start_provisioning(self, request: ProvisioningRequest) -> str:
        return self.orchestrator.start(request)

    async def wait_for_provisioning(self, tracking_id: str) -> bool | None:
        return await self.orchestrator.wait(tracking_id)

    def get_progress(self, tracking_id: str, cursor: int = 0) -> list[ProgressEvent]:
        return self.tracker.events(tracking_id, cursor)

    def subscribe(self, tracking_id: str, cursor: int = 0) -> AsyncIterator[ProgressEvent]:
        return self.tracker.subscribe(tracking_id, cursor)

    # -- ad-hoc scripts ---------------------------------------------------

    def start_script(
        self,
        ref: InstanceRef,
        script: str,
        owner: ScriptOwner,
        timeout: float | None = None,
        *,
        on_output: OutputCallback | None = None,
        host: str | None = None,
    ) -> ScriptHandle:
        """Register a session and run ``script`` on ``ref`` in the background.

        The session id is usable for ``abort_session`` as soon as this
        returns; the session is removed when the task finishes.
        """
        if not script.strip():
            raise ValidationError("script must not be empty")
        session = ExecutionSession(
            instance_id=owner.instance_id or str(ref),
            organization_id=owner.organization_id,
            user_id=owner.user_id,
        )
        self.sessions.register(session)
        task = asyncio.get_running_loop().create_task(
            self._run_session(
                session,
                ref,
                script,
                timeout or self.settings.setup_script_timeout,
                on_output,
                host,
            ),
            name=f"script-{session.session_id}",
        )
        self._scripts.add(task)
        task.add_done_callback(self._scripts.discard)
        return ScriptHandle(session.session_id, task)

    async def run_script(
        self,
        ref: InstanceRef,
        script: str,
        owner: ScriptOwner,
        timeout: float | None = None,
        *,
        on_output: OutputCallback | None = None,
        host: str | None = None,
    ) -> tuple[str, ExecutionResult]:
        handle = self.start_script(ref, script, owner, timeout, on_output=on_output, host=host)
        return handle.session_id, await handle.task

    def abort_session(self, session_id: str, owner: ScriptOwner) -> bool:
        """Abort a running script. False if unknown, finished or not ``owner``'s."""
        session = self.sessions.get(session_id)
        if session is None:
            return False
        if not session.is_owned_by(owner.user_id, owner.organization_id, owner.instance_id):
            logger.warning("Refusing abort of session %s by user %s", session_id, owner.user_id)
            return False
        return self.sessions.cancel(session_id)

    def prune(self) -> tuple[list[str], list[str]]:
        """Drop stale sessions and finished progress streams."""
        sessions = self.sessions.prune(self.settings.session_max_age)
        streams = self.tracker.prune(self.settings.progress_retention)
        if sessions or streams:
            logger.info("Pruned %d session(s) and %d progress stream(s)", len(sessions), len(streams))
        return sessions, streams

    async def aclose(self) -> None:
        await self.orchestrator.aclose()
        for task in list(self._scripts):
            task.cancel()
        await asyncio.gather(*self._scripts, return_exceptions=True)
        await self.provider.aclose()
        if self.source_control is not None:
            await self.source_control.aclose()

    async def _run_session(
        self,
        session: ExecutionSession,
        ref: InstanceRef,
        script: str,
        timeout: float,
        on_output: OutputCallback | None,
        host: str | None,
    ) -> ExecutionResult:
        try:
            username = self.settings.ssh_user or await self.identity.login_name(session.user_id)
            target = ExecutionTarget(
                ref=ref,
                username=username,
                credential=self.credential,
                host=host,
                port=self.settings.ssh_port,
            )
            return await self.executor.run(
                target,
                script,
                timeout=timeout,
                on_output=on_output,
                session=session,
            )
        finally:
            self.sessions.unregister(session.session_id)
