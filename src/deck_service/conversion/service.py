import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from .interfaces import (
    DEFAULT_TIMEOUT_MS,
    ConversionEngine,
    ConversionJob,
    JobStatus,
    OutcomeStatus,
    ProcessOutcome,
    WorkspaceGateway,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCERPT_CHARS = 2000


def _stamp(path: Path) -> tuple[int, int] | None:
    if not path.is_file():
        return None
    st = path.stat()
    return st.st_mtime_ns, st.st_ino


class ErrorKind:
    INPUT_MISSING = "input_missing"
    LAUNCH_FAILED = "launch_failed"
    EXITED_WITH_ERROR = "exited_with_error"
    TIMED_OUT = "timed_out"
    ARTIFACT_MISSING_AFTER_CLEAN_EXIT = "artifact_missing_after_clean_exit"
    INTERNAL_ERROR = "internal_error"


_OUTCOME_KINDS = {
    OutcomeStatus.EXITED_WITH_ERROR: ErrorKind.EXITED_WITH_ERROR,
    OutcomeStatus.TIMED_OUT: ErrorKind.TIMED_OUT,
    OutcomeStatus.LAUNCH_FAILED: ErrorKind.LAUNCH_FAILED,
}


@dataclass(frozen=True)
class ConversionResult:
    status: str
    job_id: str | None = None
    artifact_path: Path | None = None
    kind: str | None = None
    message: str = ""
    diagnostics: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @classmethod
    def success(cls, job_id: str, artifact_path: Path) -> "ConversionResult":
        return cls(status=JobStatus.SUCCEEDED, job_id=job_id, artifact_path=artifact_path)

    @classmethod
    def failure(
        cls, kind: str, message: str, *, job_id: str | None = None, diagnostics: str = ""
    ) -> "ConversionResult":
        return cls(status=JobStatus.FAILED, job_id=job_id, kind=kind, message=message, diagnostics=diagnostics)

    def to_dict(self) -> dict[str, object]:
        """JSON-safe view; never includes absolute filesystem paths."""
        if self.succeeded:
            assert self.artifact_path is not None
            return {"status": self.status, "jobId": self.job_id, "artifact": self.artifact_path.name}
        return {
            "status": self.status,
            "jobId": self.job_id,
            "kind": self.kind,
            "message": self.message,
            "details": self.diagnostics or "No detailed error from LibreOffice process.",
        }


class ConversionService:
    """Runs one conversion job per call and always cleans up its staged input.

    ``run`` never raises for conversion problems: every failure comes back as a
    classified ``ConversionResult``. Only workspace creation at startup is fatal.
    """

    def __init__(
        self,
        workspace: WorkspaceGateway,
        converter: ConversionEngine,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_concurrency: int = 4,
        excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
        artifact_ttl_sec: int = 0,
        prune_interval_sec: float = 60.0,
    ) -> None:
        self._workspace = workspace
        self._converter = converter
        self._timeout_ms = timeout_ms
        self._excerpt_chars = excerpt_chars
        self._artifact_ttl_sec = artifact_ttl_sec
        self._prune_interval_sec = prune_interval_sec
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._tasks: list[asyncio.Task] = []

    @property
    def workspace(self) -> WorkspaceGateway:
        return self._workspace

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    async def start(self) -> None:
        self._workspace.ensure()
        if self._artifact_ttl_sec > 0:
            self._tasks.append(asyncio.create_task(self._prune_loop()))

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def run(self, input_file: str | os.PathLike[str]) -> ConversionResult:
        input_path = Path(input_file)
        if not input_path.is_file():
            logger.error("Input presentation file not found: %s", input_path.name)
            return ConversionResult.failure(
                ErrorKind.INPUT_MISSING, "Input presentation file not found on server. Please upload it again."
            )

        job: ConversionJob | None = None
        staged = input_path
        try:
            self._workspace.ensure()
            job = self._workspace.new_job(input_path)
            staged = job.input_path
            logger.info("Job %s: received %s", job.id, job.input_path.name)
            async with self._slots:
                if not job.input_path.is_file():
                    job.transition(JobStatus.FAILED)
                    return ConversionResult.failure(
                        ErrorKind.INPUT_MISSING,
                        "Input presentation file disappeared before conversion started.",
                        job_id=job.id,
                    )
                job.transition(JobStatus.RUNNING)
                before = _stamp(job.output_path)
                outcome = await self._converter.execute(job, self._timeout_ms)
            return self._classify(job, outcome, before)
        except Exception as e:
            logger.exception("Unexpected error during conversion of %s", staged.name)
            if job is not None and not job.finished:
                job.transition(JobStatus.FAILED)
            return ConversionResult.failure(
                ErrorKind.INTERNAL_ERROR,
                self._workspace.redact(f"Server error during file conversion: {e}"),
                job_id=job.id if job is not None else None,
            )
        finally:
            if job is not None:
                self._workspace.release(job)
            self._cleanup(staged)

    def _classify(
        self, job: ConversionJob, outcome: ProcessOutcome, before: tuple[int, int] | None = None
    ) -> ConversionResult:
        diagnostics = self._excerpt(outcome.stderr)
        if outcome.status == OutcomeStatus.EXITED_CLEANLY:
            # Exit code 0 is not proof of success; the converter can exit 0 without output.
            # A PDF left over from an earlier run does not count either.
            after = _stamp(job.output_path)
            if after is not None and after != before:
                job.transition(JobStatus.SUCCEEDED)
                logger.info("Job %s: PDF file successfully created: %s", job.id, job.output_path.name)
                return ConversionResult.success(job.id, job.output_path)
            job.transition(JobStatus.FAILED)
            logger.error(
                "Job %s: PDF output not found after clean exit (expected %s)", job.id, job.output_path.name
            )
            return ConversionResult.failure(
                ErrorKind.ARTIFACT_MISSING_AFTER_CLEAN_EXIT,
                self._with_summary("PDF conversion failed. Output file not found.", outcome.stderr),
                job_id=job.id,
                diagnostics=diagnostics,
            )

        job.transition(JobStatus.FAILED)
        kind = _OUTCOME_KINDS[outcome.status]
        if kind == ErrorKind.EXITED_WITH_ERROR:
            message = self._with_summary(outcome.message, outcome.stderr)
        else:
            message = self._workspace.redact(outcome.message)
        logger.error("Job %s: conversion failed (%s): %s", job.id, kind, message)
        return ConversionResult.failure(kind, message, job_id=job.id, diagnostics=diagnostics)

    def _excerpt(self, text: str) -> str:
        text = self._workspace.redact(text.strip())
        if len(text) > self._excerpt_chars:
            text = "..." + text[-self._excerpt_chars:]
        return text

    def _with_summary(self, message: str, stderr: str) -> str:
        lines = [line.strip() for line in stderr.splitlines() if line.strip()]
        if not lines:
            return f"{message} Stderr: [No stderr output]"
        return f"{message} Stderr: {self._workspace.redact(lines[-1])[:300]}"

    def _cleanup(self, staged: Path) -> None:
        try:
            if self._workspace.discard(staged):
                logger.info("Deleted temporary uploaded file: %s", staged.name)
        except OSError as e:
            logger.warning("Failed to delete temporary uploaded file %s: %s", staged.name, e)

    async def _prune_loop(self) -> None:
        while True:
            await asyncio.sleep(self._prune_interval_sec)
            started = time.monotonic()
            try:
                self._workspace.prune_artifacts(self._artifact_ttl_sec)
            except OSError as e:
                logger.warning("Artifact pruning failed: %s", e)
            logger.debug("Artifact pruning took %.3fs", time.monotonic() - started)
