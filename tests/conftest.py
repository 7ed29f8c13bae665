import asyncio
import sys
import textwrap
from pathlib import Path

import pytest

from deck_service.conversion import (
    ConversionJob,
    LibreOfficeConverter,
    LocalWorkspace,
    OutcomeStatus,
    ProcessOutcome,
)

# Small stand-ins for the libreoffice binary. They understand the same
# "--convert-to pdf <input> --outdir <dir>" arguments.
_SCRIPT_HEADER = """
import os
import sys
import time

args = sys.argv[1:]
src = args[args.index("--convert-to") + 2]
outdir = args[args.index("--outdir") + 1]
stem = os.path.splitext(os.path.basename(src))[0]
target = os.path.join(outdir, stem + ".pdf")
"""

CONVERTER_BEHAVIOURS = {
    "success": """
with open(target, "wb") as f:
    f.write(b"%PDF-1.4\\n% fake deck\\n%%EOF\\n")
print("convert " + src + " -> " + target + " using filter : impress_pdf_Export")
sys.exit(0)
""",
    "no_output": """
sys.stderr.write("Error: source file could not be loaded\\n")
sys.exit(0)
""",
    "fail": """
sys.stderr.write("unsupported format\\n")
sys.exit(1)
""",
    "hang": """
with open(os.path.join(outdir, "converter.pid"), "w") as f:
    f.write(str(os.getpid()))
sys.stderr.write("loading document\\n")
sys.stderr.flush()
time.sleep(60)
""",
    "noisy_fail": """
sys.stderr.write("warning: " + src + "\\n")
sys.stderr.write("x" * 5000 + "\\n")
sys.stderr.write("fatal: broken slide master\\n")
sys.exit(3)
""",
}


@pytest.fixture
def workspace(tmp_path):
    """Workspace with all three directories created under tmp_path."""
    ws = LocalWorkspace(tmp_path / "stage", tmp_path / "out", tmp_path / "logs")
    ws.ensure()
    return ws


@pytest.fixture
def converter_command(tmp_path):
    """Factory returning an argv prefix that runs a fake converter script."""
    def _make(behaviour: str) -> list[str]:
        script = tmp_path / f"fake_libreoffice_{behaviour}.py"
        script.write_text(
            textwrap.dedent(_SCRIPT_HEADER) + textwrap.dedent(CONVERTER_BEHAVIOURS[behaviour]),
            encoding="utf-8",
        )
        return [sys.executable, str(script)]

    return _make


@pytest.fixture
def libreoffice(converter_command):
    """Factory for a real LibreOfficeConverter driving a fake script."""
    def _make(behaviour: str) -> LibreOfficeConverter:
        return LibreOfficeConverter(converter_command(behaviour), drain_grace_sec=1.0)

    return _make


@pytest.fixture
def stage_file(workspace):
    """Write a file straight into the staging directory."""
    def _stage(name: str = "deck.pptx", content: bytes = b"PK\x03\x04fake-pptx") -> Path:
        path = workspace.staging_path(name)
        path.write_bytes(content)
        return path

    return _stage


class FakeConverter:
    """In-process converter that records calls instead of spawning anything."""

    def __init__(
        self,
        status: str = OutcomeStatus.EXITED_CLEANLY,
        *,
        write_output: bool = True,
        stderr: str = "",
        return_code: int | None = None,
        message: str = "",
        raises: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.status = status
        self.write_output = write_output
        self.stderr = stderr
        self.return_code = return_code
        self.message = message
        self.raises = raises
        self.delay = delay
        self.calls: list[ConversionJob] = []
        self.seen_input_exists: list[bool] = []

    async def execute(self, job: ConversionJob, timeout_ms: int = 60000) -> ProcessOutcome:
        self.calls.append(job)
        self.seen_input_exists.append(job.input_path.exists())
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.write_output and self.status == OutcomeStatus.EXITED_CLEANLY:
            job.output_path.write_bytes(b"%PDF-1.4\n%%EOF\n")
        code = self.return_code
        if code is None:
            code = 0 if self.status == OutcomeStatus.EXITED_CLEANLY else 1
        return ProcessOutcome(self.status, return_code=code, stderr=self.stderr, message=self.message)


@pytest.fixture
def fake_converter():
    return FakeConverter
