from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("linkwizard.runtime")


@dataclass
class PipelineStep:
    """Step descriptor for the deterministic step runner."""
    name: str
    fn: Callable[[object], None]
    skip_if: Optional[Callable[[object], bool]] = None
    always_run: bool = False


class StepRunner:
    """Runs named steps in order; a step that raises stops the run."""

    def __init__(self, steps: List[PipelineStep]) -> None:
        """Purpose: Initialize the runner with an ordered list of steps.
        Inputs/Outputs: Input is a list of PipelineStep; no return value.
        Side Effects / State: Stores the step list for later execution.
        Dependencies: None beyond PipelineStep definitions.
        Failure Modes: None; assumes valid callables in steps.
        If Removed: The commit batch has no ordered execution.
        Testing Notes: Provide a minimal step list and ensure order is preserved.
        """
        # Keep the ordered step list.
        self._steps = steps

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self._steps]

    def run(self, context: object) -> List[str]:
        """Purpose: Execute steps in order with optional skip/always-run rules.
        Inputs/Outputs: Input is a mutable context object; output is the names of
            the steps that ran.
        Side Effects / State: Invokes step functions that may mutate context.
        Dependencies: PipelineStep.fn and PipelineStep.skip_if semantics.
        Failure Modes: Exceptions in step functions propagate to the caller after
            always_run steps have been given a chance to run.
        If Removed: Commit cannot execute its write sequence.
        Testing Notes: Verify skip_if and always_run logic with simple steps.
        """
        # Run steps in order; after a failure only always_run steps execute.
        executed: List[str] = []
        pending_error: Optional[BaseException] = None
        for step in self._steps:
            if pending_error is not None and not step.always_run:
                continue
            if not step.always_run and step.skip_if and step.skip_if(context):
                logger.debug("step=%s status=skipped", step.name)
                continue
            try:
                step.fn(context)
            except Exception as exc:
                if pending_error is not None:
                    raise
                logger.debug("step=%s status=failed", step.name)
                pending_error = exc
                continue
            executed.append(step.name)
        if pending_error is not None:
            raise pending_error
        return executed
