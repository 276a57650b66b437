"""Forward/compensate step runner for multi-system operations."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from bounty_board_service.logging import get_logger

Forward = Callable[[dict[str, Any]], Awaitable[Any]]
Compensate = Callable[[Any], Awaitable[None]]


class StepStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"
    COMPENSATION_FAILED = "compensation_failed"


@dataclass(frozen=True)
class Step:
    """
    One pipeline step.

    ``forward`` receives the results of earlier steps keyed by step name.
    ``compensate`` receives this step's own result and undoes it.
    """

    name: str
    forward: Forward
    compensate: Compensate | None = None


@dataclass
class StepRecord:
    name: str
    status: StepStatus
    error: str | None = None


@dataclass
class Pipeline:
    """
    Runs steps in order and unwinds completed ones when a later step fails.

    A failing compensation is logged and recorded, the remaining
    compensations still run, and the original error is re-raised.
    ``trail`` keeps what happened to each step for auditing and tests.
    """

    name: str
    steps: list[Step] = field(default_factory=list)
    trail: list[StepRecord] = field(default_factory=list)

    def add(self, name: str, forward: Forward, compensate: Compensate | None = None) -> Pipeline:
        self.steps.append(Step(name=name, forward=forward, compensate=compensate))
        return self

    async def run(self) -> dict[str, Any]:
        logger = get_logger(__name__)
        results: dict[str, Any] = {}
        completed: list[tuple[Step, Any]] = []

        for step in self.steps:
            try:
                result = await step.forward(results)
            except Exception as exc:
                self.trail.append(StepRecord(step.name, StepStatus.FAILED, type(exc).__name__))
                logger.warning(
                    "Pipeline step failed",
                    extra={
                        "pipeline": self.name,
                        "step": step.name,
                        "error_type": type(exc).__name__,
                    },
                )
                await self._compensate(completed)
                raise
            results[step.name] = result
            completed.append((step, result))
            self.trail.append(StepRecord(step.name, StepStatus.COMPLETED))

        return results

    async def _compensate(self, completed: list[tuple[Step, Any]]) -> None:
        logger = get_logger(__name__)
        for step, result in reversed(completed):
            if step.compensate is None:
                continue
            try:
                await step.compensate(result)
            except Exception as exc:
                self.trail.append(
                    StepRecord(step.name, StepStatus.COMPENSATION_FAILED, type(exc).__name__)
                )
                logger.exception(
                    "Pipeline compensation failed",
                    extra={"pipeline": self.name, "step": step.name},
                )
                continue
            self.trail.append(StepRecord(step.name, StepStatus.COMPENSATED))
            logger.info(
                "Pipeline step compensated",
                extra={"pipeline": self.name, "step": step.name},
            )
