"""Minimal compensating-step workflow runner.

Used where a multi-step operation spans resources that cannot share one
database transaction (rows plus an outbound email). Steps run in order; when
one raises, the compensations of the steps that already completed run in
reverse and the original exception propagates. A failing compensation is
logged and skipped so the remaining ones still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Any]
    compensation: Optional[Callable[[], Any]] = None


@dataclass
class Saga:
    name: str
    logger: logging.Logger
    steps: List[SagaStep] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    compensation_failures: List[str] = field(default_factory=list)

    def step(
        self,
        name: str,
        action: Callable[[], Any],
        compensation: Optional[Callable[[], Any]] = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name, action, compensation))
        return self

    def run(self) -> None:
        done: List[SagaStep] = []
        for step in self.steps:
            try:
                step.action()
            except Exception as exc:
                self.logger.error(
                    "saga_failed saga=%s step=%s error=%s completed=%s",
                    self.name,
                    step.name,
                    exc,
                    [s.name for s in done],
                )
                self._compensate(done)
                raise
            done.append(step)
            self.completed.append(step.name)

    def _compensate(self, done: List[SagaStep]) -> None:
        for step in reversed(done):
            if step.compensation is None:
                continue
            try:
                step.compensation()
                self.logger.error("saga_compensation saga=%s step=%s status=ok", self.name, step.name)
            except Exception as exc:
                self.compensation_failures.append(step.name)
                self.logger.critical(
                    "saga_compensation saga=%s step=%s status=failed error=%s "
                    "(manual reconciliation required)",
                    self.name,
                    step.name,
                    exc,
                )
