"""
Domain layer for presentation-to-PDF conversion.
Provides the job model, the workspace and LibreOffice adapters, and the
service that orchestrates a single conversion attempt, so front-ends (HTTP or
others) can use the same core logic.
"""

from .adapters import LibreOfficeConverter, LocalWorkspace
from .errors import DeckServiceError, InvalidTransition, UploadTooLarge, WorkspaceError
from .interfaces import (
    ConversionEngine,
    ConversionJob,
    JobStatus,
    OutcomeStatus,
    ProcessOutcome,
    WorkspaceGateway,
)
from .service import ConversionResult, ConversionService, ErrorKind
