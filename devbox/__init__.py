"""Provision cloud development VMs and run scripts on them over SSH."""

from __future__ import annotations

from .cancellation import CancelReason, CancellationToken
from .config import Settings
from .errors import (
    AuthenticationError,
    DevboxError,
    InstanceNotFoundError,
    ProviderError,
    StageTransitionError,
    TrackingNotFoundError,
    TransportError,
    ValidationError,
)
from .exec import ExecutionOutcome, ExecutionResult, ExecutionTarget, ScriptExecutor, SshCredential
from .orchestrator import ProvisioningOrchestrator, ProvisioningRequest, RepositoryRequest
from .progress import EventKind, ProgressEvent, ProgressTracker, Stage
from .readiness import ProbeResult, ReadinessProber
from .service import DevboxService, ScriptHandle, ScriptOwner
from .sessions import ExecutionSession, SessionRegistry

__all__ = [
    "AuthenticationError",
    "CancelReason",
    "CancellationToken",
    "DevboxError",
    "DevboxService",
    "EventKind",
    "ExecutionOutcome",
    "ExecutionResult",
    "ExecutionSession",
    "ExecutionTarget",
    "InstanceNotFoundError",
    "ProbeResult",
    "ProgressEvent",
    "ProgressTracker",
    "ProviderError",
    "ProvisioningOrchestrator",
    "ProvisioningRequest",
    "ReadinessProber",
    "RepositoryRequest",
    "ScriptExecutor",
    "ScriptHandle",
    "ScriptOwner",
    "SessionRegistry",
    "Settings",
    "SshCredential",
    "Stage",
    "StageTransitionError",
    "TrackingNotFoundError",
    "TransportError",
    "ValidationError",
]
