"""
Pipeline exception hierarchy.

Row- and chunk-level failures never raise past their adapter; they are written
onto the rows. These exceptions cover the failures that end a run.
"""


class PipelineError(Exception):
    """Base class for errors that stop a pipeline run."""


class StepConfigError(PipelineError, ValueError):
    """A step definition or its adapter configuration is unusable."""


class StepError(PipelineError):
    """A step adapter failed for the whole batch; the run halts at this step."""

    def __init__(self, step_id: str, cause: Exception = None, message: str = None):
        self.step_id = step_id
        self.cause = cause
        super().__init__(message or f"Step '{step_id}' failed: {cause}")


class PreflightError(PipelineError):
    """The connectivity check before the first step failed; no row was touched."""


class RetryExhaustedError(PipelineError):
    """A remote call kept failing after every allowed retry."""

    def __init__(self, attempts: int, cause: Exception):
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Gave up after {attempts} attempts: {cause}")
