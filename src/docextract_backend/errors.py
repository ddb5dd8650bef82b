from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when required settings (base URL, service credential) are missing."""


class StoreError(RuntimeError):
    """Raised when the job store cannot complete a query or command."""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str, message: str = "Job not found") -> None:
        super().__init__(message)
        self.job_id = job_id
        self.message = message


class JobProcessingError(RuntimeError):
    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.message = message
