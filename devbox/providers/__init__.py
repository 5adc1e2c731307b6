"""Provider abstraction layer for compute and source-control providers."""

from __future__ import annotations

from .base import (
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
from .gce import DEFAULT_SOURCE_IMAGE, GceProvider
from .github import GitHubProvider


def get_provider(provider_type: ProviderType | str, *, access_token: str | None = None) -> CloudProvider:
    """Factory function to get a cloud provider by type.

    Args:
        provider_type: Either a ProviderType enum or string ("gce")
        access_token: Credential handed to the provider

    Returns:
        An instance of the appropriate provider

    Raises:
        ValueError: If provider type is unknown
    """
    if isinstance(provider_type, str):
        provider_type = ProviderType(provider_type)

    match provider_type:
        case ProviderType.GCE:
            return GceProvider(access_token or "")

    raise ValueError(f"Unknown provider type: {provider_type}")


__all__ = [
    # Base classes
    "CloudProvider",
    "CreatedInstance",
    "InstanceInfo",
    "InstanceRef",
    "InstanceSpec",
    "InstanceStatus",
    "NetworkInterface",
    "ProviderType",
    "SourceControlProvider",
    # Compute Engine
    "DEFAULT_SOURCE_IMAGE",
    "GceProvider",
    # GitHub
    "GitHubProvider",
    # Factory
    "get_provider",
]
