class JobError(Exception):
    """Base exception for job engine errors."""
    pass

class TenantError(JobError):
    pass

class ConfigurationError(JobError):
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class ScheduleNotFoundError(JobError):
    def __init__(self, cron_job_id):
        super().__init__(f"Cron job {cron_job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class HandlerNotFound(JobError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type '{job_type}'")

class ScheduleMisconfigured(JobError):
    pass

class ExecutionError(JobError):
    """Raised by handlers. Subclasses decide whether the job is retried."""
    retryable = True

class TransientExecutionError(ExecutionError):
    retryable = True

class PermanentExecutionError(ExecutionError):
    retryable = False

class JobCancelledError(JobError):
    pass

class ClaimError(JobError):
    pass

class ClaimConflict(ClaimError):
    """Another worker won the conditional claim update."""
    pass

class ClaimLostError(ClaimError):
    """The job is no longer held under this worker's claim token."""
    pass
