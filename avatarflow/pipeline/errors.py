"""
Exception taxonomy for the avatar video pipeline.

Non-fatal errors (upload, script generation, cleanup, a single poll attempt)
are caught inside the orchestrator. Fatal ones end the job and are written
verbatim into the terminal ProgressRecord.
"""


class PipelineError(Exception):
    """Base class for every pipeline failure."""


class InvalidRequest(PipelineError):
    """Neither a generated nor a custom script can be resolved from the request."""


class StageError(PipelineError):
    """An external stage service failed or returned an unusable response."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(message)


class PollTimeout(PipelineError):
    """A polled stage never reported completion within its attempt ceiling."""

    def __init__(self, stage: str, attempts: int, interval: float):
        self.stage = stage
        self.attempts = attempts
        super().__init__(
            f"{stage} timed out after {attempts} attempts "
            f"({attempts * interval:.0f}s)"
        )


class Cancelled(PipelineError):
    """The job's cancel token was set while a stage was being polled."""


class NotFound(PipelineError):
    """No ProgressRecord exists for the requested job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Process not found: {job_id}")
