class JobQueueError(Exception):
    """Base class for engine errors."""


class StoreError(JobQueueError):
    """The job store could not be read or written."""


class JobNotFoundError(JobQueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobNotPendingError(JobQueueError):
    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is not pending (status={status})")
        self.job_id = job_id
        self.status = status


class UnknownQueueError(JobQueueError):
    def __init__(self, name: str):
        super().__init__(f"Unknown queue: {name}")
        self.name = name


class NoHandlerError(JobQueueError):
    def __init__(self, job_type: str):
        super().__init__(f"No handler for job type: {job_type}")
        self.job_type = job_type


class HandlerTimeoutError(JobQueueError):
    def __init__(self, timeout_ms: int):
        super().__init__(f"Job timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class RegistryFrozenError(JobQueueError):
    """Handlers cannot be registered once the scheduler is running."""
