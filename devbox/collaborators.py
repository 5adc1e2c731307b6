"""Contracts for the persistence and identity services the orchestrator writes to."""

from __future__ import annotations

import threading
from typing import Protocol


class InstanceRegistry(Protocol):
    """Fire-and-forget writes of facts learned while provisioning."""

    async def record_instance_id(self, record_id: str, provider_id: str) -> None: ...

    async def record_public_address(self, record_id: str, address: str) -> None: ...


class IdentityDirectory(Protocol):
    """Keyed lookup of account names used for script templating."""

    async def login_name(self, user_id: str) -> str: ...

    async def git_identity(self, user_id: str) -> tuple[str, str]: ...


class InMemoryInstanceRegistry:
    """Process-local registry, mostly useful for the CLI and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.instance_ids: dict[str, str] = {}
        self.public_addresses: dict[str, str] = {}

    async def record_instance_id(self, record_id: str, provider_id: str) -> None:
        with self._lock:
            self.instance_ids[record_id] = provider_id

    async def record_public_address(self, record_id: str, address: str) -> None:
        with self._lock:
            self.public_addresses[record_id] = address


class StaticIdentityDirectory:
    """Identity lookup backed by fixed mappings with a shared fallback."""

    def __init__(
        self,
        *,
        default_login: str = "devbox",
        logins: dict[str, str] | None = None,
        git_identities: dict[str, tuple[str, str]] | None = None,
    ) -> None:
        self._default_login = default_login
        self._logins = dict(logins or {})
        self._git_identities = dict(git_identities or {})

    async def login_name(self, user_id: str) -> str:
        return self._logins.get(user_id, self._default_login)

    async def git_identity(self, user_id: str) -> tuple[str, str]:
        return self._git_identities.get(
            user_id, ("devbox@example.com", "DevBox User")
        )
