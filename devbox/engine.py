"""
Stage registry and sequential driver for provisioning workflows.

Each stage function returns a typed StageResult; the driver maps that
outcome to a progress transition instead of every stage doing its own
error bookkeeping.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import typing as t
from collections.abc import Awaitable
from dataclasses import dataclass

from .progress import Stage

if t.TYPE_CHECKING:
    from .context import ProvisioningContext

logger = logging.getLogger(__name__)


class StageOutcome(enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FATAL = "fatal"
    SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class StageResult:
    outcome: StageOutcome
    message: str | None = None

    @classmethod
    def ok(cls, message: str | None = None) -> StageResult:
        return cls(StageOutcome.SUCCESS, message)

    @classmethod
    def warning(cls, message: str) -> StageResult:
        return cls(StageOutcome.WARNING, message)

    @classmethod
    def fatal(cls, message: str) -> StageResult:
        return cls(StageOutcome.FATAL, message)

    @classmethod
    def skipped(cls, message: str | None = None) -> StageResult:
        return cls(StageOutcome.SKIPPED, message)


StageFunc = t.Callable[["ProvisioningContext"], Awaitable[StageResult]]
StagePredicate = t.Callable[["ProvisioningContext"], bool]


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    func: StageFunc
    message: str | None = None
    when: StagePredicate | None = None


class StageRegistry:
    def __init__(self) -> None:
        self._stages: dict[Stage, StageDefinition] = {}

    def stage(
        self,
        stage: Stage,
        *,
        message: str | None = None,
        when: StagePredicate | None = None,
    ) -> t.Callable[[StageFunc], StageFunc]:
        """Register ``func`` as the body of ``stage``.

        ``message`` is published when the stage starts; ``when`` makes the
        stage conditional (it is neither announced nor run when False).
        """
        if stage.terminal:
            raise ValueError(f"{stage.value} is reached by the driver, not registered")

        def decorator(func: StageFunc) -> StageFunc:
            if stage in self._stages:
                raise ValueError(f"Stage '{stage.value}' already registered")
            self._stages[stage] = StageDefinition(
                stage=stage,
                func=func,
                message=message,
                when=when,
            )
            return func

        return decorator

    @property
    def stages(self) -> list[StageDefinition]:
        """Registered stages in workflow order."""
        return sorted(self._stages.values(), key=lambda definition: definition.stage.order)


async def run_stages(registry: StageRegistry, ctx: ProvisioningContext) -> bool:
    """Run every applicable stage in order and finish the progress stream.

    Returns True when the stream reached COMPLETE. Exceptions escaping a
    stage are converted to a failure with the exception's message.
    """
    try:
        for definition in registry.stages:
            if definition.when is not None and not definition.when(ctx):
                logger.debug("[%s] skipping %s", ctx.tracking_id, definition.stage.value)
                continue
            ctx.advance(definition.stage, definition.message)
            start = time.perf_counter()
            result = await definition.func(ctx)
            duration = time.perf_counter() - start
            ctx.timings.add(definition.stage.value, duration)

            match result.outcome:
                case StageOutcome.FATAL:
                    ctx.fail(result.message or f"{definition.stage.value} failed")
                    return False
                case StageOutcome.WARNING:
                    ctx.warn(result.message or f"{definition.stage.value} reported a problem")
                case StageOutcome.SUCCESS | StageOutcome.SKIPPED:
                    if result.message:
                        ctx.note(result.message)
            logger.info(
                "[%s] %s finished in %.2fs (%s)",
                ctx.tracking_id, definition.stage.value, duration, result.outcome.value,
            )

        ctx.complete()
        return True
    except asyncio.CancelledError:
        ctx.fail("Provisioning was cancelled")
        raise
    except Exception as exc:
        logger.exception("[%s] provisioning crashed", ctx.tracking_id)
        ctx.fail(str(exc) or exc.__class__.__name__)
        return False
    finally:
        for line in ctx.timings.summary():
            logger.info("[%s] %s", ctx.tracking_id, line)
