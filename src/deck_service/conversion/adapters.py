import asyncio
import codecs
import hashlib
import logging
import os
import re
import shlex
import shutil
import signal
import sys
import time
import uuid
from pathlib import Path
from typing import IO, Sequence

from .errors import UploadTooLarge, WorkspaceError
from .interfaces import (
    DEFAULT_TIMEOUT_MS,
    ConversionEngine,
    ConversionJob,
    OutcomeStatus,
    ProcessOutcome,
    UploadReader,
    WorkspaceGateway,
    WorkspacePaths,
)

logger = logging.getLogger(__name__)

ARTIFACT_ROUTE = "/converted_pdfs"
UPLOAD_CHUNK = 1024 * 1024

_POSIX = os.name == "posix"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(original: str | None) -> str:
    # Browsers may send a full client path; keep only the last component
    name = re.split(r"[\\/]", original or "")[-1]
    base, ext = os.path.splitext(name)
    base = _UNSAFE_CHARS.sub("_", base).strip("._") or "upload"
    ext = _UNSAFE_CHARS.sub("", ext).lower()
    return f"{base[:80]}{ext[:10]}"


class LocalWorkspace(WorkspaceGateway):
    """Staging, output and log directories on the local filesystem.

    Every path a job touches is allocated here. New files get a fresh token
    prefix, and a job id stays reserved until the job is released, so
    concurrent jobs never share a name.
    """

    def __init__(self, staging_dir: str | Path, output_dir: str | Path, log_dir: str | Path) -> None:
        self.paths = WorkspacePaths(
            staging_dir=Path(staging_dir).resolve(),
            output_dir=Path(output_dir).resolve(),
            log_dir=Path(log_dir).resolve(),
        )
        # ids of jobs created but not yet released
        self._active: set[str] = set()

    @property
    def staging_dir(self) -> Path:
        return self.paths.staging_dir

    @property
    def output_dir(self) -> Path:
        return self.paths.output_dir

    @property
    def log_dir(self) -> Path:
        return self.paths.log_dir

    def ensure(self) -> None:
        for d in self.paths.all:
            if d.is_dir():
                continue
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WorkspaceError(f"cannot create workspace directory {d}: {e}") from e
            logger.info("Created workspace directory: %s", d)

    def staging_path(self, filename: str | None) -> Path:
        return self.paths.staging_dir / f"{uuid.uuid4().hex}-{_safe_filename(filename)}"

    def new_job(self, input_file: Path) -> ConversionJob:
        """Build a job whose id is not used by any live job or leftover PDF.

        Inputs outside staging, or whose stem would reuse an id, are moved
        to a fresh ``staging_path()`` first.
        """
        input_path = Path(input_file).resolve()
        if input_path.parent != self.paths.staging_dir or self._id_taken(input_path.stem):
            claimed = self.staging_path(input_path.name)
            shutil.move(str(input_path), str(claimed))
            logger.debug("Claimed %s into staging as %s", input_path.name, claimed.name)
            input_path = claimed
        job_id = input_path.stem
        self._active.add(job_id)
        stamp = int(time.time() * 1000)
        return ConversionJob(
            id=job_id,
            input_path=input_path,
            output_path=self.paths.output_dir / f"{job_id}.pdf",
            log_path=self.paths.log_dir / f"libreoffice_debug_{job_id}_{stamp}.log",
        )

    def release(self, job: ConversionJob) -> None:
        """Forget a finished job's id; its PDF still reserves the name."""
        self._active.discard(job.id)

    def _id_taken(self, job_id: str) -> bool:
        return job_id in self._active or (self.paths.output_dir / f"{job_id}.pdf").exists()

    async def stage_upload(self, filename: str | None, reader: UploadReader, *, max_bytes: int) -> Path:
        """Stream an upload into staging, enforcing ``max_bytes``."""
        input_path = self.staging_path(filename)
        sha256 = hashlib.sha256()
        size_bytes = 0
        try:
            with input_path.open("wb") as f_out:
                while True:
                    chunk = await reader(UPLOAD_CHUNK)
                    if not chunk:
                        break
                    b = bytes(chunk)
                    size_bytes += len(b)
                    if size_bytes > max_bytes:
                        raise UploadTooLarge(max_bytes)
                    f_out.write(b)
                    sha256.update(b)
        except BaseException:
            self.discard(input_path)
            raise
        logger.info(
            "Staged upload %s (%d bytes, sha256=%s)", input_path.name, size_bytes, sha256.hexdigest()
        )
        return input_path

    def discard(self, path: Path) -> bool:
        """Remove ``path`` if it exists; return whether a file was removed."""
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        return True

    def artifact_url(self, artifact_path: Path) -> str:
        return f"{ARTIFACT_ROUTE}/{Path(artifact_path).name}"

    def prune_artifacts(self, max_age_sec: float, *, now: float | None = None) -> list[Path]:
        """Delete converted PDFs whose mtime is older than ``max_age_sec``."""
        cutoff = (time.time() if now is None else now) - max_age_sec
        removed: list[Path] = []
        if not self.paths.output_dir.is_dir():
            return removed
        for pdf in self.paths.output_dir.glob("*.pdf"):
            try:
                if pdf.stat().st_mtime < cutoff:
                    pdf.unlink()
                    removed.append(pdf)
            except FileNotFoundError:
                continue
        if removed:
            logger.info("Pruned %d expired artifact(s) from %s", len(removed), self.paths.output_dir)
        return removed

    def redact(self, text: str) -> str:
        """Strip workspace directory prefixes from text shown to clients."""
        for d in self.paths.all:
            text = text.replace(f"{d}{os.sep}", "").replace(str(d), d.name)
        return text


class LibreOfficeConverter(ConversionEngine):
    """Runs ``libreoffice --headless --convert-to pdf`` as a child process."""

    READ_CHUNK = 4096

    def __init__(self, command: Sequence[str] | str | None = None, *, drain_grace_sec: float = 2.0) -> None:
        if command is None:
            command = ["soffice" if sys.platform == "win32" else "libreoffice"]
        elif isinstance(command, str):
            command = shlex.split(command, posix=_POSIX)
        if not command:
            raise ValueError("converter command must not be empty")
        self._command = list(command)
        self._drain_grace_sec = drain_grace_sec

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def build_args(self, job: ConversionJob) -> list[str]:
        return [
            *self._command,
            "--headless",
            "--convert-to", "pdf",
            str(job.input_path),
            "--outdir", str(job.output_dir),
        ]

    async def execute(self, job: ConversionJob, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProcessOutcome:
        args = self.build_args(job)
        logger.info("Job %s: executing %s", job.id, " ".join(args))
        logger.info("Job %s: converter diagnostics go to %s", job.id, job.log_path.name)

        stdout_buf: list[str] = []
        stderr_buf: list[str] = []
        readers: list[asyncio.Task] = []
        proc: asyncio.subprocess.Process | None = None
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        log_file = self._open_log(job)
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(job.input_path.parent),
                    **({"start_new_session": True} if _POSIX else {}),
                )
            except (OSError, ValueError) as e:
                message = f"Failed to start {self._command[0]}. Is it installed and in PATH? Error: {e}"
                log_file.write(message + "\n")
                logger.error("Job %s: %s", job.id, message)
                return ProcessOutcome(OutcomeStatus.LAUNCH_FAILED, message=message, elapsed_ms=elapsed())

            readers = [
                asyncio.create_task(self._pump(proc.stdout, stdout_buf, None, job.id, "stdout")),
                asyncio.create_task(self._pump(proc.stderr, stderr_buf, log_file, job.id, "stderr")),
            ]
            try:
                return_code = await asyncio.wait_for(proc.wait(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.warning("Job %s: converter exceeded %d ms, killing pid %d", job.id, timeout_ms, proc.pid)
                self._kill(proc)
                await proc.wait()
                await self._drain(readers, job.id)
                message = f"LibreOffice conversion timed out after {timeout_ms / 1000:g} seconds."
                log_file.write(message + "\n")
                return ProcessOutcome(
                    OutcomeStatus.TIMED_OUT,
                    return_code=proc.returncode,
                    stdout="".join(stdout_buf),
                    stderr="".join(stderr_buf),
                    message=message,
                    elapsed_ms=elapsed(),
                )

            await self._drain(readers, job.id)
            stdout, stderr = "".join(stdout_buf), "".join(stderr_buf)
            if return_code == 0:
                logger.info("Job %s: converter exited cleanly in %d ms", job.id, elapsed())
                return ProcessOutcome(
                    OutcomeStatus.EXITED_CLEANLY, return_code=0, stdout=stdout, stderr=stderr, elapsed_ms=elapsed()
                )
            logger.error("Job %s: converter exited with code %s", job.id, return_code)
            return ProcessOutcome(
                OutcomeStatus.EXITED_WITH_ERROR,
                return_code=return_code,
                stdout=stdout,
                stderr=stderr,
                message=f"LibreOffice process exited with code {return_code}.",
                elapsed_ms=elapsed(),
            )
        finally:
            if proc is not None and proc.returncode is None:
                # Awaiting task was cancelled mid-run
                self._kill(proc)
            for task in readers:
                if not task.done():
                    task.cancel()
            try:
                await asyncio.shield(self._reap(proc, readers))
            finally:
                log_file.close()

    def _open_log(self, job: ConversionJob) -> IO[str]:
        return job.log_path.open("a", encoding="utf-8")

    @staticmethod
    async def _reap(proc: asyncio.subprocess.Process | None, readers: list[asyncio.Task]) -> None:
        # Collect the child and its readers before the log they write to is closed
        if proc is not None and proc.returncode is None:
            await proc.wait()
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        sink: list[str],
        log_file: IO[str] | None,
        job_id: str,
        label: str,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.READ_CHUNK)
            text = decoder.decode(data, final=not data)
            if text:
                sink.append(text)
                if log_file is not None:
                    log_file.write(text)
                    log_file.flush()
                level = logging.WARNING if label == "stderr" else logging.DEBUG
                logger.log(level, "Job %s [LibreOffice %s]: %s", job_id, label, text.strip())
            if not data:
                return

    async def _drain(self, readers: list[asyncio.Task], job_id: str) -> None:
        # A grandchild holding the pipe open must not stall the job
        done, pending = await asyncio.wait(readers, timeout=self._drain_grace_sec)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Job %s: output streams still open after exit, abandoning them", job_id)
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.warning("Job %s: stream reader failed: %s", job_id, task.exception())

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            if _POSIX:
                # Kill the whole session so soffice.bin children go too
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass
