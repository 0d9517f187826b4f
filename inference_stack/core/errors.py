"""Exception hierarchy for inference-stack.

Messages are phrased so the failure classifier can recognise them
(e.g. "not found", "exit status N", "invalid plan").
"""

from __future__ import annotations

from typing import Optional


class StackError(Exception):
    """Base class for all errors raised by inference-stack."""


class SpecNotFoundError(StackError):
    """Raised when a module has no install recipe or script."""


class ModelNotFoundError(StackError):
    """Raised when a model id or path cannot be resolved locally."""


class PlanValidationError(StackError):
    """A refinement candidate referenced a mode, step or key outside the baseline."""


class InvalidPlanError(StackError):
    """A provider reply could not be turned into a typed candidate."""


class StrictModeError(StackError):
    """A planner in strict mode could not produce a refined plan."""


class ProviderError(StackError):
    """The text-generation provider failed or is unavailable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PreconditionError(StackError):
    """An install precondition was not met."""


class InstallStepError(StackError):
    """An install step failed to run or its postcondition was not met."""

    def __init__(self, step_id: str, detail: str):
        super().__init__(f"install step {step_id} failed: {detail}")
        self.step_id = step_id


class CommandExitError(StackError):
    """A subprocess exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int):
        super().__init__(f"{command}: exit status {exit_code}")
        self.command = command
        self.exit_code = exit_code
