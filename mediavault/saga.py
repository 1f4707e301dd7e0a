"""Ordered multi-step workflows without atomic rollback.

Each step names its own compensation, or none. When a step raises, the
compensations of that step and of every step before it run in reverse order,
then the original exception propagates. A failing compensation is logged and
does not mask the original error.
"""
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from loguru import logger

S = TypeVar("S")


@dataclass
class SagaStep(Generic[S]):
    name: str
    action: Callable[[S], None]
    compensate: Optional[Callable[[S], None]] = None


class Saga(Generic[S]):
    def __init__(self, name: str, steps: Sequence[SagaStep[S]]):
        self.name = name
        self.steps = list(steps)

    def run(self, state: S) -> S:
        started: List[SagaStep[S]] = []
        for step in self.steps:
            started.append(step)
            try:
                step.action(state)
            except Exception as exc:
                logger.warning("{} saga stopped at step '{}': {!r}", self.name, step.name, exc)
                self._compensate(started, state)
                raise
        return state

    def _compensate(self, started: List[SagaStep[S]], state: S) -> None:
        for step in reversed(started):
            if step.compensate is None:
                continue
            try:
                step.compensate(state)
            except Exception:
                logger.exception("{} saga: compensation for '{}' failed", self.name, step.name)
