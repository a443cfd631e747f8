class JobError(Exception):
    """Base exception for job orchestration errors."""
    pass

class ConfigurationError(JobError):
    pass

class UserNotFoundError(JobError):
    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"User with id {user_id} not found")

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class DuplicateJobError(JobError):
    def __init__(self, dedup_key: str):
        self.dedup_key = dedup_key
        super().__init__(f"An in-flight job with key {dedup_key} already exists")

class NotCancellableError(JobError):
    def __init__(self, job_id, current_status):
        self.job_id = job_id
        self.current_status = current_status
        super().__init__(f"Job {job_id} cannot be cancelled in status {current_status}")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class QueueError(JobError):
    pass

class BatchProcessingError(JobError):
    """Raised back to the queue engine so it applies its own retry policy."""

    def __init__(self, message: str, results):
        self.results = results
        super().__init__(message)
