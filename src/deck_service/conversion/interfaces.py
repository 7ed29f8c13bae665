from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from .errors import InvalidTransition

DEFAULT_TIMEOUT_MS = 60000


class JobStatus:
    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.CREATED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


@dataclass
class ConversionJob:
    """One conversion attempt and the paths it owns.

    ``id`` is the stem of the staged input. The workspace never hands out an
    id that a live job or an existing PDF already uses.
    """

    id: str
    input_path: Path
    output_path: Path
    log_path: Path
    state: str = JobStatus.CREATED

    def transition(self, target: str) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.id, self.state, target)
        self.state = target

    @property
    def output_dir(self) -> Path:
        return self.output_path.parent

    @property
    def finished(self) -> bool:
        return self.state in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class OutcomeStatus:
    EXITED_CLEANLY = "exited_cleanly"
    EXITED_WITH_ERROR = "exited_with_error"
    TIMED_OUT = "timed_out"
    LAUNCH_FAILED = "launch_failed"


@dataclass(frozen=True)
class ProcessOutcome:
    status: str
    return_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    message: str = ""
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.EXITED_CLEANLY


UploadReader = Callable[[int], Awaitable[bytes]]


class ConversionEngine(Protocol):
    async def execute(self, job: ConversionJob, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProcessOutcome:
        """Run the external converter for ``job`` and return exactly one outcome.

        Must not raise for process-level failures; those are reported through
        the returned outcome.
        """


class WorkspaceGateway(Protocol):
    def ensure(self) -> None:
        ...

    def new_job(self, input_file: Path) -> ConversionJob:
        ...

    def release(self, job: ConversionJob) -> None:
        ...

    def discard(self, path: Path) -> bool:
        ...

    def prune_artifacts(self, max_age_sec: float) -> list[Path]:
        ...

    def redact(self, text: str) -> str:
        ...


@dataclass(frozen=True)
class WorkspacePaths:
    staging_dir: Path
    output_dir: Path
    log_dir: Path
    all: tuple[Path, ...] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "all", (self.staging_dir, self.output_dir, self.log_dir))
