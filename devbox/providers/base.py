"""Abstract base classes for cloud compute and source-control providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum


class ProviderType(Enum):
    """Supported cloud providers."""

    GCE = "gce"


class InstanceStatus(Enum):
    """Lifecycle states reported by the compute provider."""

    PROVISIONING = "PROVISIONING"
    STAGING = "STAGING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    SUSPENDING = "SUSPENDING"
    SUSPENDED = "SUSPENDED"
    REPAIRING = "REPAIRING"
    TERMINATED = "TERMINATED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> InstanceStatus:
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(slots=True, frozen=True)
class InstanceRef:
    """Provider-side coordinates of one instance."""

    project: str
    zone: str
    name: str

    def __str__(self) -> str:
        return f"{self.project}/{self.zone}/{self.name}"


@dataclass(slots=True, frozen=True)
class InstanceSpec:
    """Everything needed to ask the provider for a new instance."""

    project: str
    zone: str
    name: str
    machine_type: str
    source_image: str
    disk_size_gb: int = 10
    startup_script: str | None = None
    tags: tuple[str, ...] = ()

    @property
    def ref(self) -> InstanceRef:
        return InstanceRef(self.project, self.zone, self.name)


@dataclass(slots=True, frozen=True)
class CreatedInstance:
    """Provider response to a create request."""

    id: str
    name: str


@dataclass(slots=True, frozen=True)
class NetworkInterface:
    network: str | None = None
    internal_ip: str | None = None
    external_ips: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class InstanceInfo:
    """Standardized view of a provider instance."""

    id: str
    name: str
    status: InstanceStatus
    network_interfaces: tuple[NetworkInterface, ...] = field(default_factory=tuple)

    @property
    def public_address(self) -> str | None:
        """First external address on any interface, if one is assigned."""
        for interface in self.network_interfaces:
            for address in interface.external_ips:
                if address:
                    return address
        return None


class CloudProvider(ABC):
    """Abstract base class for compute providers."""

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type."""
        ...

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> CreatedInstance:
        """Request creation of a new instance.

        Returns as soon as the provider has accepted the request; the
        instance is usually still booting.

        Raises:
            AuthenticationError: Credentials rejected.
            ProviderError: Any other provider-side failure.
        """
        ...

    @abstractmethod
    async def get_instance(self, ref: InstanceRef) -> InstanceInfo:
        """Fetch current status and networking of an instance.

        Raises:
            InstanceNotFoundError: The instance does not exist.
            AuthenticationError: Credentials rejected.
            TransportError: The provider API could not be reached.
        """
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""


class SourceControlProvider(ABC):
    """Abstract base class for source-control hosting providers."""

    @abstractmethod
    async def register_public_key(self, user_id: str, title: str, key: str) -> bool:
        """Attach an SSH public key to the user's account.

        Returns False when the user has no linked account; raises
        ProviderError when the provider rejects the key.
        """
        ...

    @abstractmethod
    async def remove_public_key(self, user_id: str, key_id: int) -> bool:
        """Detach a previously registered key."""
        ...

    async def list_public_keys(self, user_id: str) -> Sequence[dict[str, object]]:
        """List keys on the user's account. Providers without a listing API report none."""
        return []

    async def aclose(self) -> None:
        """Release any pooled connections."""
