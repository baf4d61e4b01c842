"""
Compensation-list primitives for multi-step remote operations.

Each forward step that leaves a remote or durable side effect registers the
action that undoes it. On failure the orchestrator runs the undo actions in
reverse order of creation. A failing undo action is logged and counted; it
never replaces the error that triggered the rollback.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .metrics import emit_compensation_metric

logger = logging.getLogger(__name__)


@dataclass
class CompensationStep:
    description: str
    action: Callable[[], None]


class Compensation:
    """Undo actions for one forward step, newest first on run()."""

    def __init__(self, steps: Optional[list[CompensationStep]] = None):
        self._steps: list[CompensationStep] = list(steps or [])

    @classmethod
    def noop(cls) -> "Compensation":
        return cls()

    @property
    def is_noop(self) -> bool:
        return not self._steps

    @property
    def descriptions(self) -> list[str]:
        return [step.description for step in self._steps]

    def add(self, description: str, action: Callable[[], None]) -> "Compensation":
        self._steps.append(CompensationStep(description, action))
        return self

    def run(self) -> list[str]:
        """Run every step in reverse order; return descriptions of the steps that failed."""
        failed = []
        for step in reversed(self._steps):
            try:
                step.action()
                logger.info(f"Compensation step succeeded: {step.description}")
            except Exception as e:
                logger.error(
                    f"Compensation step failed: {step.description}: {e}",
                    extra={"compensation_step": step.description},
                    exc_info=True,
                )
                failed.append(step.description)
        self._steps.clear()
        return failed


class Saga:
    """
    Orchestrates compensations across steps.

    Usage:
        with Saga("checkout") as saga:
            saga.register(provision(...).compensation)
            saga.register(create_session(...).compensation)

    Any exception escaping the block rolls back the registered compensations
    (last registered first) and then propagates unchanged.
    """

    def __init__(self, name: str):
        self.name = name
        self._compensations: list[Compensation] = []

    def register(self, compensation: Compensation) -> None:
        if not compensation.is_noop:
            self._compensations.append(compensation)

    def rollback(self) -> list[str]:
        failed = []
        for compensation in reversed(self._compensations):
            failed.extend(compensation.run())
        self._compensations.clear()
        return failed

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            self._compensations.clear()
            return False

        logger.warning(f"Saga {self.name} failed, rolling back: {exc}")
        failed = self.rollback()
        emit_compensation_metric(self.name, len(failed))
        if failed:
            logger.error(
                f"Saga {self.name} rollback incomplete: {len(failed)} step(s) failed",
                extra={"failed_steps": failed},
            )
        return False
