"""Shared helper types to avoid circular imports."""

from __future__ import annotations

import typing as t

OutputStream = t.Literal["stdout", "stderr"]


class Console:
    """Simple console output with quiet mode support."""

    quiet: bool

    def __init__(self, *, quiet: bool = False) -> None:
        self.quiet = quiet

    def info(self, value: str) -> None:
        if not self.quiet:
            print(value, flush=True)

    def always(self, value: str) -> None:
        print(value, flush=True)


class TimingsCollector:
    """Collects how long each provisioning stage took."""

    def __init__(self) -> None:
        self._entries: list[tuple[str, float]] = []

    def add(self, label: str, duration: float) -> None:
        self._entries.append((label, duration))

    @property
    def entries(self) -> list[tuple[str, float]]:
        return list(self._entries)

    def total(self) -> float:
        return sum(duration for _, duration in self._entries)

    def summary(self) -> list[str]:
        if not self._entries:
            return []

        lines = ["Stage timings:"]
        for label, duration in self._entries:
            lines.append(f"  ├─ {label}: {duration:.2f}s")
        lines.append(f"Total: {self.total():.2f}s")
        return lines
