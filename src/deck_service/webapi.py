import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from deck_service.conversion import (
    ConversionEngine,
    ConversionService,
    ErrorKind,
    LibreOfficeConverter,
    LocalWorkspace,
    UploadTooLarge,
    WorkspaceError,
    WorkspaceGateway,
)
from deck_service.conversion.adapters import ARTIFACT_ROUTE
from deck_service.logging_config import setup_logging
from deck_service.settings import Settings

logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    ErrorKind.INPUT_MISSING: status.HTTP_400_BAD_REQUEST,
    ErrorKind.EXITED_WITH_ERROR: 422,
    ErrorKind.ARTIFACT_MISSING_AFTER_CLEAN_EXIT: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.LAUNCH_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TIMED_OUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


def build_service(
    settings: Settings, workspace: WorkspaceGateway, converter: ConversionEngine | None = None
) -> ConversionService:
    if converter is None:
        converter = LibreOfficeConverter(settings.converter_argv())
    return ConversionService(
        workspace,
        converter,
        timeout_ms=settings.convert_timeout_ms,
        max_concurrency=settings.max_concurrency,
        excerpt_chars=settings.diagnostic_excerpt_chars,
        artifact_ttl_sec=settings.artifact_ttl_sec,
    )


def create_app(
    settings: Settings | None = None,
    *,
    converter: ConversionEngine | None = None,
    configure_logging: bool = True,
) -> FastAPI:
    """Build the API around a single ``ConversionService``.

    The workspace directories are created during startup; if that fails the
    application refuses to start.
    """
    settings = settings or Settings.from_env()
    workspace = LocalWorkspace(settings.staging_dir, settings.output_dir, settings.log_dir)
    service = build_service(settings, workspace, converter)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await service.start()
        except WorkspaceError as e:
            if configure_logging:
                setup_logging(log_level=settings.log_level)
            logger.critical("Failed to create necessary directories: %s", e)
            raise
        if configure_logging:
            setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)
        logger.info("Configured uploads directory: %s", workspace.staging_dir)
        logger.info("Configured converted PDFs directory: %s", workspace.output_dir)
        logger.info("LibreOffice debug logs will be in: %s", workspace.log_dir)
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Presentation Conversion Service",
        version=settings.version,
        description="Converts uploaded PowerPoint presentations to PDF for in-browser viewing.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service

    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, dict) else {"kind": "http_error", "message": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content={"error": detail}, headers=exc.headers)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/convert-presentation")
    async def convert_presentation(presentationFile: UploadFile | None = File(None)) -> JSONResponse:
        """Convert an uploaded .ppt/.pptx to PDF.

        Accepts multipart/form-data with a single part named "presentationFile".
        Returns the URL of the converted PDF, or a structured error object.
        """
        upload = presentationFile
        if upload is None or not upload.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"kind": "invalid_upload", "message": "No presentation file was uploaded."},
            )
        _check_presentation(settings, upload)

        async def read_chunk(n: int) -> bytes:
            return await upload.read(n)

        try:
            staged = await workspace.stage_upload(
                upload.filename, read_chunk, max_bytes=settings.max_upload_bytes
            )
        except UploadTooLarge as e:
            raise HTTPException(
                status_code=413,
                detail={"kind": "payload_too_large", "message": f"Upload Error: {e}"},
            )

        result = await service.run(staged)
        if not result.succeeded:
            return JSONResponse(status_code=_FAILURE_STATUS[result.kind], content={"error": result.to_dict()})

        assert result.artifact_path is not None
        return JSONResponse(content={"jobId": result.job_id, "pdfUrl": workspace.artifact_url(result.artifact_path)})

    app.mount(
        ARTIFACT_ROUTE,
        StaticFiles(directory=str(settings.output_dir), check_dir=False),
        name="converted_pdfs",
    )
    return app


def _check_presentation(settings: Settings, upload: UploadFile) -> None:
    ct = (upload.content_type or "").strip().lower()
    _, ext = os.path.splitext((upload.filename or "").lower())
    # Some clients label decks application/octet-stream; the extension is enough
    if ct in settings.allowed_mime or ext in settings.allowed_extensions:
        return
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "kind": "invalid_upload",
            "message": (
                "Upload Error: Only PowerPoint (.ppt) and PowerPoint Open XML (.pptx) files are allowed! "
                f"Detected MIME: {ct or 'unknown'}, Extension: {ext or 'none'}"
            ),
        },
    )


app = create_app()


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3001). Set PORT env var to override.
    """
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("deck_service.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
