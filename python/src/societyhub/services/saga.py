"""
Step sequencing for multi-record writes.

The record store has no multi-record transactions, so writes that span two
records run as an explicit list of steps:

    saga = Saga("assign_resident")
    saga.add_step("profile", "profile", add_membership, compensation=restore_memberships)
    saga.add_step("flat", "flat", occupy_flat, compensation=restore_flat)
    await saga.run()

On failure the completed steps are compensated in reverse order (unless
the saga was built with ``compensate=False``) and a ``SagaError`` describes
what is still written.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

StepAction = Callable[[], Awaitable[Any]]


@dataclass
class SagaStep:
    """One write in a saga."""

    name: str
    side: str
    action: StepAction
    compensation: Optional[StepAction] = None


@dataclass(eq=False)
class SagaError(Exception):
    """
    A saga step failed.

    Attributes:
        saga: Saga name
        failed_step: Step that raised
        cause: The exception raised by the step
        completed: Steps that ran before the failure
        still_written: Sides of completed steps that were not compensated
        compensation_errors: Step name -> exception for failed compensations
    """

    saga: str
    failed_step: SagaStep
    cause: BaseException
    completed: List[SagaStep] = field(default_factory=list)
    still_written: List[str] = field(default_factory=list)
    compensation_errors: Dict[str, BaseException] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(
            f"Saga {self.saga} failed at step {self.failed_step.name}: {self.cause}"
        )

    @property
    def compensated(self) -> bool:
        return not self.still_written

    def side_written(self, side: str) -> bool:
        return side in self.still_written


class Saga:
    """Ordered steps with optional reverse-order compensation."""

    def __init__(self, name: str, *, compensate: bool = True):
        self.name = name
        self.compensate = compensate
        self.steps: List[SagaStep] = []
        self.results: Dict[str, Any] = {}

    def add_step(
        self,
        name: str,
        side: str,
        action: StepAction,
        compensation: Optional[StepAction] = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name=name, side=side, action=action, compensation=compensation))
        return self

    async def run(self) -> Dict[str, Any]:
        """
        Run all steps in order.

        Returns:
            Step name -> step result

        Raises:
            SagaError: If a step fails (after compensation)
        """
        completed: List[SagaStep] = []

        for step in self.steps:
            try:
                self.results[step.name] = await step.action()
            except Exception as e:
                logger.error(f"Saga {self.name}: step '{step.name}' failed: {e}")
                raise await self._unwind(step, e, completed) from e
            completed.append(step)
            logger.debug(f"Saga {self.name}: step '{step.name}' done")

        return self.results

    async def _unwind(self, failed: SagaStep, cause: BaseException, completed: List[SagaStep]) -> SagaError:
        still_written: List[str] = []
        compensation_errors: Dict[str, BaseException] = {}

        for step in reversed(completed):
            if not self.compensate or step.compensation is None:
                still_written.append(step.side)
                continue
            try:
                await step.compensation()
                logger.info(f"Saga {self.name}: compensated step '{step.name}'")
            except Exception as e:
                logger.error(
                    f"Saga {self.name}: compensation of '{step.name}' failed: {e}",
                    exc_info=True,
                )
                compensation_errors[step.name] = e
                still_written.append(step.side)

        return SagaError(
            saga=self.name,
            failed_step=failed,
            cause=cause,
            completed=list(completed),
            still_written=sorted(set(still_written)),
            compensation_errors=compensation_errors,
        )
