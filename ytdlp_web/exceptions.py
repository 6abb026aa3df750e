"""
Defines custom exceptions used throughout the orchestrator.

Every error is scoped to a single request or job; none of them is fatal
to the service itself.
"""

class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    pass

class InvalidRequestError(OrchestratorError):
    """Raised when a download request has an empty URL or malformed options."""
    pass

class JobNotFoundError(OrchestratorError):
    """Raised when a job id is unknown to the registry."""
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id

class InvalidTransitionError(OrchestratorError):
    """Raised when a mutation would violate the job state machine."""
    pass

class AlreadyTerminalError(InvalidTransitionError):
    """Raised when a job has already completed, failed or been cancelled."""
    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is already {status}.")
        self.job_id = job_id
        self.status = status

class SpawnError(OrchestratorError):
    """Raised when the downloader process could not be started."""
    pass

class ProcessFailedError(OrchestratorError):
    """Raised when the downloader process exits with a non-zero status."""
    def __init__(self, return_code: int, diagnostic: str):
        message = f"yt-dlp exited with status {return_code}"
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(message)
        self.return_code = return_code
        self.diagnostic = diagnostic

class SchedulerStoppedError(OrchestratorError):
    """Raised when work is submitted while the scheduler is not running."""
    pass
