"""
Per-run execution context handed to every provisioning stage.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass, field

from ._types import OutputStream, TimingsCollector
from .config import Settings
from .exec import ExecutionResult, ExecutionTarget, ScriptExecutor, SshCredential
from .progress import ProgressTracker, Stage
from .providers.base import InstanceRef
from .readiness import ReadinessProber
from .sessions import ExecutionSession, SessionRegistry

if t.TYPE_CHECKING:
    from .collaborators import IdentityDirectory, InstanceRegistry
    from .orchestrator import ProvisioningRequest
    from .providers.base import CloudProvider, SourceControlProvider


@dataclass(slots=True)
class ProvisioningContext:
    """Collaborators plus the facts learned so far about one run."""

    request: ProvisioningRequest
    tracking_id: str
    settings: Settings
    tracker: ProgressTracker
    provider: CloudProvider
    prober: ReadinessProber
    executor: ScriptExecutor
    sessions: SessionRegistry
    instances: InstanceRegistry
    identity: IdentityDirectory
    credential: SshCredential
    source_control: SourceControlProvider | None = None
    timings: TimingsCollector = field(default_factory=TimingsCollector)

    login_name: str | None = None
    git_email: str | None = None
    git_name: str | None = None
    instance_id: str | None = None
    public_address: str | None = None
    ssh_reachable: bool = False

    @property
    def ref(self) -> InstanceRef:
        return InstanceRef(self.request.project_id, self.request.zone, self.request.name)

    def target(self) -> ExecutionTarget:
        username = self.login_name or self.settings.ssh_user
        if not username:
            raise RuntimeError("login name was not resolved before running scripts")
        return ExecutionTarget(
            ref=self.ref,
            username=username,
            credential=self.credential,
            host=self.public_address,
            port=self.settings.ssh_port,
        )

    def advance(self, stage: Stage, message: str | None = None) -> None:
        self.tracker.advance(
            self.tracking_id,
            stage,
            message,
            instance_id=self.instance_id,
        )

    def note(self, message: str) -> None:
        self.tracker.note(self.tracking_id, message)

    def warn(self, message: str) -> None:
        self.tracker.warn(self.tracking_id, message)

    def fail(self, message: str) -> None:
        self.tracker.fail(self.tracking_id, message)

    def complete(self) -> None:
        self.tracker.advance(
            self.tracking_id,
            Stage.COMPLETE,
            f"VM {self.request.name} created successfully!",
            instance_id=self.instance_id or self.request.record_id,
        )

    async def run(
        self,
        label: str,
        script: str,
        *,
        timeout: float,
    ) -> ExecutionResult:
        """Run a script on the new instance, streaming output into the progress stream.

        The run is registered as an execution session owned by the
        requesting user so it can be aborted like any ad-hoc script.
        """
        session = ExecutionSession(
            instance_id=self.request.record_id,
            organization_id=self.request.organization_id,
            user_id=self.request.user_id,
        )
        self.sessions.register(session)
        self.note(f"[{label}] running...")

        def forward(stream: OutputStream, text: str) -> None:
            self.tracker.emit_output(self.tracking_id, stream, text)

        try:
            return await self.executor.run(
                self.target(),
                script,
                timeout=timeout,
                on_output=forward,
                session=session,
            )
        finally:
            self.sessions.unregister(session.session_id)
