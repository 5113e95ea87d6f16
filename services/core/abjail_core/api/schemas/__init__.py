"""API schemas."""

from abjail_core.api.schemas.cases import (
    CaseResponse,
    CommentCreate,
    CommentCreateResponse,
    CommentResponse,
    LandingUrlResponse,
    ViolationResponse,
)
from abjail_core.api.schemas.pipeline import (
    ClassifyRequest,
    ClassifyResponse,
    InboundResponse,
    OcrRequest,
    OcrResponse,
    ScreenshotRequest,
    ScreenshotResponse,
    SenderRequest,
    SenderResponse,
    UploadRequest,
    UploadResponse,
)
from abjail_core.api.schemas.reports import (
    ReportListResponse,
    ReportResponse,
    ReportViolationRequest,
    ReportViolationResponse,
)

__all__ = [
    "CaseResponse",
    "ClassifyRequest",
    "ClassifyResponse",
    "CommentCreate",
    "CommentCreateResponse",
    "CommentResponse",
    "InboundResponse",
    "LandingUrlResponse",
    "OcrRequest",
    "OcrResponse",
    "ReportListResponse",
    "ReportResponse",
    "ReportViolationRequest",
    "ReportViolationResponse",
    "ScreenshotRequest",
    "ScreenshotResponse",
    "SenderRequest",
    "SenderResponse",
    "UploadRequest",
    "UploadResponse",
    "ViolationResponse",
]
