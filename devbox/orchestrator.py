"""
Provisioning workflow: create an instance, wait for it, then set it up.

Stages are registered on a module-level StageRegistry and driven by
``run_stages``. Creation and readiness are mandatory; repository bootstrap
and the boot script only ever produce warnings.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import date

from .collaborators import IdentityDirectory, InstanceRegistry
from .config import Settings
from .context import ProvisioningContext
from .engine import StageRegistry, StageResult, run_stages
from .errors import DevboxError, ProviderError, TransportError, ValidationError
from .exec import ScriptExecutor, SshCredential
from .progress import ProgressTracker, Stage
from .providers.base import CloudProvider, InstanceSpec, SourceControlProvider
from .providers.gce import DEFAULT_SOURCE_IMAGE
from .readiness import ReadinessProber
from .scripts import (
    clone_script,
    find_public_key,
    key_generation_script,
    parse_repository,
)
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)

_INSTANCE_NAME = re.compile(r"^[a-z](?:[-a-z0-9]{0,61}[a-z0-9])?$")
_CLONE_DIRECTORY = re.compile(r"^(?:~/|/)?[A-Za-z0-9._-]+(?:/[A-Za-z0-9._-]+)*$")


@dataclass(slots=True, frozen=True)
class RepositoryRequest:
    """A GitHub repository to clone onto the new instance."""

    repository: str
    branch: str | None = None
    directory: str | None = None

    @classmethod
    def parse(
        cls,
        value: str,
        *,
        branch: str | None = None,
        directory: str | None = None,
    ) -> RepositoryRequest:
        return cls(parse_repository(value), branch or None, directory or None)


@dataclass(slots=True, frozen=True)
class ProvisioningRequest:
    record_id: str
    organization_id: str
    user_id: str
    name: str
    project_id: str
    zone: str
    machine_type: str = "e2-medium"
    source_image: str = DEFAULT_SOURCE_IMAGE
    disk_size_gb: int = 10
    startup_script: str | None = None
    boot_script: str | None = None
    repository: RepositoryRequest | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)

    @property
    def needs_install(self) -> bool:
        return self.repository is not None or bool(self.boot_script)

    def validate(self) -> None:
        for attr in ("record_id", "organization_id", "user_id", "project_id", "zone", "machine_type"):
            if not getattr(self, attr):
                raise ValidationError(f"{attr} is required")
        if not _INSTANCE_NAME.match(self.name):
            raise ValidationError(
                f"Invalid instance name {self.name!r}: use lowercase letters, digits "
                + "and hyphens, starting with a letter (max 63 characters)"
            )
        if self.disk_size_gb < 10:
            raise ValidationError("disk_size_gb must be at least 10")
        if self.boot_script is not None and not self.boot_script.strip():
            raise ValidationError("boot_script must not be blank")
        if self.repository is not None:
            parse_repository(self.repository.repository)
            directory = self.repository.directory
            if directory is not None and not _CLONE_DIRECTORY.match(directory):
                raise ValidationError(f"Invalid clone directory: {directory!r}")

    def instance_spec(self) -> InstanceSpec:
        return InstanceSpec(
            project=self.project_id,
            zone=self.zone,
            name=self.name,
            machine_type=self.machine_type,
            source_image=self.source_image,
            disk_size_gb=self.disk_size_gb,
            startup_script=self.startup_script,
            tags=self.tags,
        )


registry = StageRegistry()


@registry.stage(Stage.PREPARING, message="Preparing VM creation...")
async def prepare(ctx: ProvisioningContext) -> StageResult:
    request = ctx.request
    request.validate()
    ctx.login_name = ctx.settings.ssh_user or await ctx.identity.login_name(request.user_id)
    if request.repository is not None:
        ctx.git_email, ctx.git_name = await ctx.identity.git_identity(request.user_id)
    return StageResult.ok(f"Login account: {ctx.login_name}")


@registry.stage(Stage.CREATING, message="Creating VM instance...")
async def create_instance(ctx: ProvisioningContext) -> StageResult:
    request = ctx.request
    try:
        created = await ctx.provider.create_instance(request.instance_spec())
    except (ProviderError, TransportError) as exc:
        return StageResult.fatal(f"Failed to create VM {request.name}: {exc}")
    ctx.instance_id = created.id
    return StageResult.ok(f"Instance {created.name} accepted by provider ({created.id})")


@registry.stage(Stage.CONFIGURING, message="Configuring VM...")
async def configure(ctx: ProvisioningContext) -> StageResult:
    request = ctx.request
    settings = ctx.settings
    if ctx.instance_id is None:
        return StageResult.fatal(f"VM {request.name} has no instance id; it was never created")
    await _record(ctx, "instance id", ctx.instances.record_instance_id(request.record_id, ctx.instance_id))

    ctx.note("Waiting for VM to be running...")
    running = await ctx.prober.wait_for_running(
        ctx.ref,
        settings.running_max_attempts,
        settings.running_interval,
    )
    if not running:
        return StageResult.fatal(
            f"VM {request.name} did not reach RUNNING after {running.attempts} status checks"
        )
    ctx.note(f"VM is running (after {running.attempts} status checks)")

    address = running.info.public_address if running.info is not None else None
    if address is None:
        return StageResult.warning("VM has no external IP address; skipping SSH reachability check")
    ctx.public_address = address
    await _record(ctx, "public address", ctx.instances.record_public_address(request.record_id, address))

    ctx.note(f"Waiting for SSH on {address}:{settings.ssh_port}...")
    reachable = await ctx.prober.wait_for_ssh_reachable(
        address,
        settings.ssh_port,
        settings.ssh_max_attempts,
        settings.ssh_interval,
        connect_timeout=settings.ssh_connect_timeout,
    )
    ctx.ssh_reachable = reachable.ready
    if not reachable:
        return StageResult.warning(
            f"SSH port {settings.ssh_port} on {address} still unreachable after "
            + f"{reachable.attempts} probes; continuing anyway"
        )
    return StageResult.ok(f"SSH is reachable at {address}")


@registry.stage(
    Stage.INSTALLING,
    message="Installing software...",
    when=lambda ctx: ctx.request.needs_install,
)
async def install(ctx: ProvisioningContext) -> StageResult:
    request = ctx.request
    problems = 0
    if request.repository is not None and not await bootstrap_repository(ctx, request.repository):
        problems += 1

    if request.boot_script:
        ctx.note("Running boot script...")
        try:
            result = await ctx.run(
                "boot-script",
                request.boot_script,
                timeout=ctx.settings.boot_script_timeout,
            )
        except DevboxError as exc:
            ctx.warn(f"Boot script could not run: {exc}")
            problems += 1
        else:
            if result.succeeded:
                ctx.note(f"Boot script finished in {result.duration_ms / 1000:.1f}s")
            else:
                ctx.warn(f"Boot script {result.describe()}")
                problems += 1

    if problems:
        return StageResult.ok(f"Installation finished with {problems} warning(s)")
    return StageResult.ok("Installation finished")


@registry.stage(Stage.FINALIZING, message="Finalizing setup...")
async def finalize(ctx: ProvisioningContext) -> StageResult:
    if ctx.public_address:
        return StageResult.ok(f"VM {ctx.request.name} is available at {ctx.public_address}")
    return StageResult.ok()


async def bootstrap_repository(ctx: ProvisioningContext, repository: RepositoryRequest) -> bool:
    """Give the VM a GitHub key and clone ``repository``. Returns False on any problem."""
    request = ctx.request
    timeout = ctx.settings.setup_script_timeout
    ctx.note(f"Generating SSH key for {repository.repository}...")
    try:
        keygen = await ctx.run(
            "ssh-keygen",
            key_generation_script(comment=f"devbox-{request.name}"),
            timeout=timeout,
        )
    except DevboxError as exc:
        ctx.warn(f"SSH key generation could not run: {exc}")
        return False
    if not keygen.succeeded:
        ctx.warn(f"SSH key generation {keygen.describe()}")
        return False

    public_key = find_public_key(keygen.stdout)
    if public_key is None:
        ctx.warn("No public key found in key generation output; skipping key registration and clone")
        return False

    if ctx.source_control is None:
        ctx.warn("No source-control provider configured; SSH key was not registered")
        return False
    title = f"DevBox VM: {request.name} ({date.today().isoformat()})"
    try:
        registered = await ctx.source_control.register_public_key(request.user_id, title, public_key)
    except DevboxError as exc:
        ctx.warn(f"Failed to register SSH key with GitHub: {exc}")
        return False
    if not registered:
        ctx.warn("GitHub account is not linked; SSH key was not registered")
        return False
    ctx.note(f"Registered SSH key with GitHub: {title}")

    ctx.note(f"Cloning {repository.repository}...")
    try:
        clone = await ctx.run(
            "git-clone",
            clone_script(
                repository.repository,
                git_email=ctx.git_email or "devbox@example.com",
                git_name=ctx.git_name or "DevBox User",
                branch=repository.branch,
                directory=repository.directory,
            ),
            timeout=timeout,
        )
    except DevboxError as exc:
        ctx.warn(f"Cloning {repository.repository} could not run: {exc}")
        return False
    if not clone.succeeded:
        ctx.warn(f"Cloning {repository.repository} {clone.describe()}")
        return False
    ctx.note(f"Cloned {repository.repository}")
    return True


async def _record(ctx: ProvisioningContext, what: str, write: Awaitable[None]) -> None:
    # A failed registry write never stops provisioning.
    try:
        await write
    except Exception as exc:
        logger.exception("[%s] failed to record %s", ctx.tracking_id, what)
        ctx.warn(f"Could not record {what}: {exc}")


class ProvisioningOrchestrator:
    """Starts provisioning runs and keeps their tasks alive until they finish."""

    def __init__(
        self,
        *,
        provider: CloudProvider,
        tracker: ProgressTracker,
        sessions: SessionRegistry,
        prober: ReadinessProber,
        executor: ScriptExecutor,
        instances: InstanceRegistry,
        identity: IdentityDirectory,
        credential: SshCredential,
        settings: Settings,
        source_control: SourceControlProvider | None = None,
        stages: StageRegistry = registry,
    ) -> None:
        self._provider = provider
        self._tracker = tracker
        self._sessions = sessions
        self._prober = prober
        self._executor = executor
        self._instances = instances
        self._identity = identity
        self._credential = credential
        self._settings = settings
        self._source_control = source_control
        self._stages = stages
        self._tasks: dict[str, asyncio.Task[bool]] = {}

    def start(self, request: ProvisioningRequest) -> str:
        """Validate ``request`` and launch its workflow in the background.

        Raises ValidationError before any tracking id is allocated or any
        provider is contacted.
        """
        request.validate()
        tracking_id = self._tracker.start_tracking()
        task = asyncio.get_running_loop().create_task(
            self.run(request, tracking_id),
            name=f"provision-{tracking_id}",
        )
        self._tasks[tracking_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(tracking_id, None))
        logger.info("[%s] provisioning %s in %s", tracking_id, request.name, request.zone)
        return tracking_id

    async def run(self, request: ProvisioningRequest, tracking_id: str | None = None) -> bool:
        """Run the workflow to completion in the current task."""
        if tracking_id is None:
            request.validate()
            tracking_id = self._tracker.start_tracking()
        ctx = ProvisioningContext(
            request=request,
            tracking_id=tracking_id,
            settings=self._settings,
            tracker=self._tracker,
            provider=self._provider,
            prober=self._prober,
            executor=self._executor,
            sessions=self._sessions,
            instances=self._instances,
            identity=self._identity,
            credential=self._credential,
            source_control=self._source_control,
        )
        return await run_stages(self._stages, ctx)

    async def wait(self, tracking_id: str) -> bool | None:
        """Wait for a background run; None if it is unknown or already gone."""
        task = self._tasks.get(tracking_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    @property
    def active(self) -> list[str]:
        return list(self._tasks)

    async def aclose(self) -> None:
        """Cancel outstanding runs; their streams end in ERROR."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
