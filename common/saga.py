"""Ordered, compensable multi-step writes.

A saga runs its steps in order. Each step commits on its own. When a step
fails, the compensations of the steps that already completed run in reverse
order and the original exception propagates to the caller.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[dict], Any]
    compensation: Callable[[dict, Any], None] | None = None


class Saga:
    def __init__(self, name: str, context: dict | None = None):
        self.name = name
        self.context = context if context is not None else {}
        self.steps: list[SagaStep] = []
        self.completed: list[tuple[SagaStep, Any]] = []

    def step(self, name, action, compensation=None):
        self.steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    def run(self) -> dict:
        """Execute every step; results are stored in ``context`` under the step name."""
        for step in self.steps:
            try:
                result = step.action(self.context)
            except Exception as exc:
                logger.warning(
                    "saga_compensating",
                    extra={
                        "saga": self.name,
                        "step": step.name,
                        "error_code": getattr(exc, "default_code", exc.__class__.__name__),
                    },
                )
                self.compensate()
                raise
            self.completed.append((step, result))
            self.context[step.name] = result
        return self.context

    def compensate(self):
        while self.completed:
            step, result = self.completed.pop()
            if step.compensation is None:
                continue
            try:
                step.compensation(self.context, result)
            except Exception:
                logger.exception("saga_compensation_failed", extra={"saga": self.name, "step": step.name})
