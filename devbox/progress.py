"""
In-memory progress streams for provisioning runs.

Each tracking id owns an append-only list of events and a stage that only
moves forward. ``COMPLETE`` and ``ERROR`` end the stream; anything written
after that is dropped. Readers either poll with a cursor or subscribe and
get woken on their own event loop whenever the writer appends.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import secrets
import threading
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from ._types import OutputStream
from .errors import StageTransitionError, TrackingNotFoundError

logger = logging.getLogger(__name__)


class Stage(enum.Enum):
    PREPARING = "preparing"
    CREATING = "creating"
    CONFIGURING = "configuring"
    INSTALLING = "installing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def order(self) -> int:
        return _STAGE_ORDER[self]

    @property
    def terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)

    @property
    def percent(self) -> int:
        return _STAGE_PERCENT[self]


_STAGE_ORDER = {
    Stage.PREPARING: 0,
    Stage.CREATING: 1,
    Stage.CONFIGURING: 2,
    Stage.INSTALLING: 3,
    Stage.FINALIZING: 4,
    Stage.COMPLETE: 5,
    Stage.ERROR: 6,
}

_STAGE_PERCENT = {
    Stage.PREPARING: 10,
    Stage.CREATING: 30,
    Stage.CONFIGURING: 50,
    Stage.INSTALLING: 70,
    Stage.FINALIZING: 90,
    Stage.COMPLETE: 100,
    Stage.ERROR: 0,
}

_DEFAULT_MESSAGES = {
    Stage.PREPARING: "Preparing VM creation...",
    Stage.CREATING: "Creating VM instance...",
    Stage.CONFIGURING: "Configuring VM...",
    Stage.INSTALLING: "Installing software...",
    Stage.FINALIZING: "Finalizing setup...",
    Stage.COMPLETE: "VM created successfully!",
}


class EventKind(enum.Enum):
    STAGE = "stage"
    INFO = "info"
    OUTPUT = "output"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class OutputChunk:
    stream: OutputStream
    text: str


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    tracking_id: str
    sequence: int
    stage: Stage
    kind: EventKind
    message: str
    instance_id: str | None = None
    output: OutputChunk | None = None
    percent: int | None = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.kind in (EventKind.STAGE, EventKind.ERROR) and self.stage.terminal

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "trackingId": self.tracking_id,
            "sequence": self.sequence,
            "stage": self.stage.value,
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": int(self.timestamp * 1000),
        }
        if self.instance_id is not None:
            payload["vmId"] = self.instance_id
        if self.output is not None:
            payload["scriptOutput"] = {"type": self.output.stream, "data": self.output.text}
        if self.percent is not None:
            payload["progress"] = self.percent
        if self.error is not None:
            payload["error"] = self.error
        return payload


class _Stream:
    __slots__ = ("tracking_id", "created_at", "stage", "events", "instance_id", "waiters")

    def __init__(self, tracking_id: str) -> None:
        self.tracking_id = tracking_id
        self.created_at = time.time()
        self.stage: Stage | None = None
        self.events: list[ProgressEvent] = []
        self.instance_id: str | None = None
        self.waiters: set[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = set()

    @property
    def finished(self) -> bool:
        return self.stage is not None and self.stage.terminal

    @property
    def last_update(self) -> float:
        return self.events[-1].timestamp if self.events else self.created_at


class ProgressTracker:
    """Process-local registry of progress streams keyed by tracking id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._streams: dict[str, _Stream] = {}

    def start_tracking(self) -> str:
        tracking_id = f"vm-creation-{int(time.time() * 1000)}-{secrets.token_hex(5)}"
        with self._lock:
            self._streams[tracking_id] = _Stream(tracking_id)
        return tracking_id

    def advance(
        self,
        tracking_id: str,
        stage: Stage,
        message: str | None = None,
        *,
        instance_id: str | None = None,
    ) -> bool:
        """Move the stream to a later stage.

        Returns False without recording anything when the stream already
        finished. Raises StageTransitionError for ``ERROR`` (use ``fail``)
        or for a stage that is not strictly after the current one.
        """
        if stage is Stage.ERROR:
            raise StageTransitionError("use fail() to move a stream to ERROR")
        with self._lock:
            stream = self._get(tracking_id)
            if stream.finished:
                logger.warning(
                    "Ignoring %s for finished stream %s", stage.value, tracking_id
                )
                return False
            if stream.stage is not None and stage.order <= stream.stage.order:
                raise StageTransitionError(
                    f"{tracking_id}: cannot move from {stream.stage.value} to {stage.value}"
                )
            if instance_id is not None:
                stream.instance_id = instance_id
            stream.stage = stage
            self._append(
                stream,
                kind=EventKind.STAGE,
                message=message or _DEFAULT_MESSAGES[stage],
                percent=stage.percent,
            )
        return True

    def emit_output(self, tracking_id: str, stream_name: OutputStream, chunk: str) -> bool:
        return self._record(
            tracking_id,
            EventKind.OUTPUT,
            "Script output",
            output=OutputChunk(stream_name, chunk),
        )

    def note(self, tracking_id: str, message: str) -> bool:
        return self._record(tracking_id, EventKind.INFO, message)

    def warn(self, tracking_id: str, message: str) -> bool:
        logger.warning("[%s] %s", tracking_id, message)
        return self._record(tracking_id, EventKind.WARNING, message)

    def fail(
        self,
        tracking_id: str,
        message: str,
        *,
        error: str | None = None,
    ) -> bool:
        """Force the stream into ERROR. No-op if it already finished."""
        with self._lock:
            stream = self._get(tracking_id)
            if stream.finished:
                return False
            stream.stage = Stage.ERROR
            self._append(
                stream,
                kind=EventKind.ERROR,
                message=message,
                percent=Stage.ERROR.percent,
                error=error or message,
            )
        logger.error("[%s] provisioning failed: %s", tracking_id, message)
        return True

    def events(self, tracking_id: str, cursor: int = 0) -> list[ProgressEvent]:
        """Return the events at positions ``cursor`` and later."""
        with self._lock:
            stream = self._get(tracking_id)
            return stream.events[max(cursor, 0):]

    def latest(self, tracking_id: str) -> ProgressEvent | None:
        with self._lock:
            stream = self._get(tracking_id)
            return stream.events[-1] if stream.events else None

    def stage(self, tracking_id: str) -> Stage | None:
        with self._lock:
            return self._get(tracking_id).stage

    def is_terminal(self, tracking_id: str) -> bool:
        with self._lock:
            return self._get(tracking_id).finished

    def __contains__(self, tracking_id: object) -> bool:
        with self._lock:
            return tracking_id in self._streams

    async def subscribe(
        self,
        tracking_id: str,
        cursor: int = 0,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield events from ``cursor`` onwards until the stream finishes."""
        loop = asyncio.get_running_loop()
        wakeup = asyncio.Event()
        waiter = (loop, wakeup)
        with self._lock:
            self._get(tracking_id).waiters.add(waiter)
        try:
            while True:
                wakeup.clear()
                with self._lock:
                    stream = self._get(tracking_id)
                    pending = stream.events[cursor:]
                    finished = stream.finished
                for event in pending:
                    cursor += 1
                    yield event
                if finished and not pending:
                    return
                if not pending:
                    await wakeup.wait()
        finally:
            with self._lock:
                stream = self._streams.get(tracking_id)
                if stream is not None:
                    stream.waiters.discard(waiter)

    def prune(self, max_age: float) -> list[str]:
        """Drop streams with no activity for ``max_age`` seconds."""
        cutoff = time.time() - max_age
        with self._lock:
            stale = [
                tracking_id
                for tracking_id, stream in self._streams.items()
                if stream.last_update < cutoff and not stream.waiters
            ]
            for tracking_id in stale:
                del self._streams[tracking_id]
        if stale:
            logger.info("Pruned %d progress streams", len(stale))
        return stale

    def _record(
        self,
        tracking_id: str,
        kind: EventKind,
        message: str,
        *,
        output: OutputChunk | None = None,
    ) -> bool:
        with self._lock:
            stream = self._get(tracking_id)
            if stream.finished:
                return False
            self._append(stream, kind=kind, message=message, output=output)
        return True

    def _get(self, tracking_id: str) -> _Stream:
        try:
            return self._streams[tracking_id]
        except KeyError:
            raise TrackingNotFoundError(f"Unknown tracking id: {tracking_id}") from None

    def _append(
        self,
        stream: _Stream,
        *,
        kind: EventKind,
        message: str,
        output: OutputChunk | None = None,
        percent: int | None = None,
        error: str | None = None,
    ) -> None:
        # Caller holds the lock.
        event = ProgressEvent(
            tracking_id=stream.tracking_id,
            sequence=len(stream.events),
            stage=stream.stage or Stage.PREPARING,
            kind=kind,
            message=message,
            instance_id=stream.instance_id,
            output=output,
            percent=percent,
            error=error,
            timestamp=time.time(),
        )
        stream.events.append(event)
        for loop, wakeup in stream.waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(wakeup.set)
