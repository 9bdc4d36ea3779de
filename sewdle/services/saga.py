from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[dict[str, Any]], Any]
    compensation: Callable[[dict[str, Any]], None] | None = None


@dataclass
class SagaResult:
    context: dict[str, Any]
    completed: list[str] = field(default_factory=list)


class Saga:
    """Run steps in order; on the first failure, compensate completed steps in reverse.

    Each action receives the shared context dict and its return value is stored
    under the step name. Compensation failures are logged and do not stop the
    remaining compensations. The original exception is always re-raised.
    """

    def __init__(self, steps: list[SagaStep] | None = None) -> None:
        self.steps: list[SagaStep] = list(steps or [])

    def add(
        self,
        name: str,
        action: Callable[[dict[str, Any]], Any],
        compensation: Callable[[dict[str, Any]], None] | None = None,
    ) -> Saga:
        self.steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    def run(self, context: dict[str, Any] | None = None) -> SagaResult:
        ctx: dict[str, Any] = dict(context or {})
        completed: list[SagaStep] = []
        for step in self.steps:
            try:
                ctx[step.name] = step.action(ctx)
            except Exception:
                logger.warning('Saga step %s failed, compensating %d step(s)', step.name, len(completed))
                self._compensate(completed, ctx)
                raise
            completed.append(step)
        return SagaResult(context=ctx, completed=[step.name for step in completed])

    @staticmethod
    def _compensate(completed: list[SagaStep], ctx: dict[str, Any]) -> None:
        for step in reversed(completed):
            if step.compensation is None:
                continue
            try:
                step.compensation(ctx)
            except Exception:
                logger.error('Compensation for step %s failed', step.name, exc_info=True)
