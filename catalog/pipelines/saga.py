"""Small saga runner: ordered forward steps with compensating actions.

Steps run in order. When one fails, the failed step and every completed step
are compensated in reverse order, then ``SagaAborted`` is raised carrying the
failure reason. The failed step is compensated too because it may have
partially applied (for example, some vector batches were written), so every
compensation must be idempotent.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from catalog.errors import CatalogIngestionError, describe_failure

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


@dataclass
class SagaStep:
    """A forward action and the action that undoes it.

    Attributes:
        name: Step name used in logs
        action: Coroutine factory performing the forward step
        compensation: Coroutine factory undoing it, or None when nothing
            needs undoing beyond the failure handler's cleanup
        failure_reason: Prefix for the reason recorded when this step fails
    """
    name: str
    action: Callable[[], Awaitable[Any]]
    compensation: Callable[[], Awaitable[Any]] | None = None
    failure_reason: str | None = None
    status: StepStatus = StepStatus.PENDING
    duration_ms: int = 0


class SagaAborted(CatalogIngestionError):
    """A saga step failed; compensations have already run."""

    def __init__(self, step: SagaStep, cause: BaseException):
        detail = describe_failure(cause)
        reason = f"{step.failure_reason}. Error: {detail}" if step.failure_reason else detail
        super().__init__(reason)
        self.step = step
        self.cause = cause
        self.reason = reason


@dataclass
class SagaRunner:
    name: str
    steps: list[SagaStep] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)

    def add_step(self, step: SagaStep) -> SagaRunner:
        self.steps.append(step)
        return self

    async def run(self) -> dict[str, Any]:
        """Execute every step; returns each step's result keyed by name."""
        executed: list[SagaStep] = []
        for step in self.steps:
            started = time.monotonic()
            try:
                self.results[step.name] = await step.action()
            except Exception as e:
                step.status = StepStatus.FAILED
                step.duration_ms = int((time.monotonic() - started) * 1000)
                logger.error(f"Saga '{self.name}' step '{step.name}' failed: {e}")
                await self._compensate([*executed, step])
                raise SagaAborted(step, e) from e
            step.status = StepStatus.EXECUTED
            step.duration_ms = int((time.monotonic() - started) * 1000)
            executed.append(step)
            logger.debug(f"Saga '{self.name}' step '{step.name}' done in {step.duration_ms}ms")
        logger.info(f"Saga '{self.name}' completed {len(executed)} steps")
        return self.results

    async def _compensate(self, steps: list[SagaStep]) -> None:
        for step in reversed(steps):
            if step.compensation is None:
                continue
            try:
                await step.compensation()
            except Exception as e:
                step.status = StepStatus.COMPENSATION_FAILED
                logger.critical(f"Saga '{self.name}' could not compensate step '{step.name}': {e}")
                continue
            step.status = StepStatus.COMPENSATED
            logger.warning(f"Saga '{self.name}' compensated step '{step.name}'")
