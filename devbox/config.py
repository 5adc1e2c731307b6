"""Runtime settings read from ``DEVBOX_*`` environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields

from .errors import ValidationError

ENV_PREFIX = "DEVBOX_"


@dataclass(slots=True, frozen=True)
class Settings:
    # Readiness budgets: ~5 minutes for boot, ~1 minute for sshd.
    running_max_attempts: int = 60
    running_interval: float = 5.0
    ssh_max_attempts: int = 30
    ssh_interval: float = 2.0
    ssh_port: int = 22
    ssh_connect_timeout: float = 5.0

    setup_script_timeout: float = 300.0
    boot_script_timeout: float = 1800.0
    abort_grace: float = 5.0

    session_max_age: float = 30 * 60.0
    progress_retention: float = 60 * 60.0

    ssh_user: str | None = None
    ssh_key_path: str | None = None
    ssh_key_passphrase: str | None = None

    gcp_access_token: str | None = None
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from the environment, ignoring unset variables."""
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for spec in fields(cls):
            raw = env.get(f"{ENV_PREFIX}{spec.name.upper()}")
            if raw is None or raw == "":
                continue
            values[spec.name] = _coerce(spec.name, spec.type, raw)
        settings = cls(**values)  # type: ignore[arg-type]
        settings.validate()
        return settings

    def validate(self) -> None:
        for name in ("running_max_attempts", "ssh_max_attempts"):
            if getattr(self, name) < 1:
                raise ValidationError(f"{name} must be at least 1")
        for name in (
            "running_interval",
            "ssh_interval",
            "ssh_connect_timeout",
            "abort_grace",
        ):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must not be negative")
        for name in ("setup_script_timeout", "boot_script_timeout"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive")
        if not 0 < self.ssh_port < 65536:
            raise ValidationError(f"ssh_port out of range: {self.ssh_port}")


def _coerce(name: str, annotation: object, raw: str) -> object:
    kind = str(annotation)
    try:
        if kind.startswith("int"):
            return int(raw)
        if kind.startswith("float"):
            return float(raw)
    except ValueError as exc:
        env_name = f"{ENV_PREFIX}{name.upper()}"
        raise ValidationError(f"{env_name} is not a valid number: {raw!r}") from exc
    return raw
