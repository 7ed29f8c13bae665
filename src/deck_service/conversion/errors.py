class DeckServiceError(Exception):
    """Base class for errors raised by the conversion layer."""


class WorkspaceError(DeckServiceError):
    """A workspace directory could not be created or is unusable."""


class UploadTooLarge(DeckServiceError, ValueError):
    def __init__(self, limit_bytes: int) -> None:
        self.limit_bytes = limit_bytes
        super().__init__(f"upload exceeds {limit_bytes // (1024 * 1024)} MB")


class InvalidTransition(DeckServiceError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"job {job_id}: cannot move from {current} to {target}")
