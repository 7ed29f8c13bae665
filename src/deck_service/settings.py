import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from . import __version__

DEFAULT_ALLOWED_MIME = (
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",  # pptx
    "application/vnd.ms-powerpoint",  # legacy .ppt
)
DEFAULT_ALLOWED_EXTENSIONS = (".ppt", ".pptx")


def _default_converter_command() -> str:
    return "soffice" if sys.platform == "win32" else "libreoffice"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, built once at startup and passed to constructors."""

    data_dir: Path = Path("./data").resolve()
    staging_dir: Path = Path("./data/uploads").resolve()
    output_dir: Path = Path("./data/converted_pdfs").resolve()
    log_dir: Path = Path("./data/logs").resolve()
    converter_command: str = field(default_factory=_default_converter_command)
    convert_timeout_ms: int = 60000
    max_concurrency: int = 4
    max_upload_mb: int = 20
    allowed_mime: frozenset[str] = frozenset(DEFAULT_ALLOWED_MIME)
    allowed_extensions: frozenset[str] = frozenset(DEFAULT_ALLOWED_EXTENSIONS)
    artifact_ttl_sec: int = 3600
    diagnostic_excerpt_chars: int = 2000
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3001
    reload: bool = True
    version: str = __version__

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = Path(os.getenv("DATA_DIR", "./data")).resolve()
        allowed_mime = os.getenv("ALLOWED_MIME", ",".join(DEFAULT_ALLOWED_MIME))
        return cls(
            data_dir=data_dir,
            staging_dir=Path(os.getenv("STAGING_DIR", str(data_dir / "uploads"))).resolve(),
            output_dir=Path(os.getenv("OUTPUT_DIR", str(data_dir / "converted_pdfs"))).resolve(),
            log_dir=Path(os.getenv("LOG_DIR", str(data_dir / "logs"))).resolve(),
            converter_command=os.getenv("LIBREOFFICE_COMMAND", _default_converter_command()),
            convert_timeout_ms=int(os.getenv("CONVERT_TIMEOUT_MS", "60000")),
            max_concurrency=int(os.getenv("MAX_CONCURRENCY", "4")),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "20")),
            allowed_mime=frozenset(m.strip().lower() for m in allowed_mime.split(",") if m.strip()),
            artifact_ttl_sec=int(os.getenv("ARTIFACT_TTL_SEC", "3600")),
            diagnostic_excerpt_chars=int(os.getenv("DIAGNOSTIC_EXCERPT_CHARS", "2000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "3001")),
            # Enable reload in dev unless explicitly disabled
            reload=_env_bool("RELOAD", "true"),
            version=os.getenv("DECK_SERVICE_VERSION", __version__),
        )

    @classmethod
    def for_root(cls, root: Path, **overrides: object) -> "Settings":
        """Settings with all three workspace dirs under ``root``."""
        root = Path(root).resolve()
        values: dict[str, object] = {
            "data_dir": root,
            "staging_dir": root / "uploads",
            "output_dir": root / "converted_pdfs",
            "log_dir": root / "logs",
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def converter_argv(self) -> list[str]:
        return shlex.split(self.converter_command, posix=sys.platform != "win32")
