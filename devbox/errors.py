"""Exception hierarchy shared by the provisioning and execution layers."""

from __future__ import annotations


class DevboxError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(DevboxError):
    """Input rejected before any external call was made."""


class ProviderError(DevboxError):
    """A cloud or source-control provider call failed."""

    status_code: int | None

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ProviderError):
    """Credentials were rejected or lack permission; callers should re-authenticate."""


class InstanceNotFoundError(ProviderError):
    """The instance does not exist, possibly deleted out-of-band."""


class TransportError(DevboxError):
    """Connection refused, reset or otherwise unusable; usually transient during boot."""


class StageTransitionError(DevboxError):
    """A progress stream was asked to move backwards or sideways."""


class TrackingNotFoundError(DevboxError, KeyError):
    """No progress stream exists for the given tracking id."""

    def __str__(self) -> str:
        return Exception.__str__(self)
