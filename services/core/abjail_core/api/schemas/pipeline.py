"""Pipeline trigger API schemas."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Request model accepting both camelCase aliases and field names."""

    model_config = ConfigDict(populate_by_name=True)


class UploadRequest(CamelModel):
    data_url: str = Field(alias="dataUrl", min_length=1)
    message_type: str = Field(default="unknown", alias="messageType")


class UploadResponse(BaseModel):
    ok: bool = True
    id: str
    image_url: str


class OcrRequest(CamelModel):
    submission_id: str = Field(alias="submissionId", min_length=1)
    data_url: Optional[str] = Field(default=None, alias="dataUrl")


class OcrResponse(BaseModel):
    ok: bool
    text: str = ""
    confidence: float = 0.0
    ms: int = 0
    is_fundraising: bool = False
    landing_url: Optional[str] = None
    truncated: bool = False
    duplicate_of: Optional[str] = None
    queued: bool = False


class ClassifyRequest(CamelModel):
    submission_id: str = Field(alias="submissionId", min_length=1)
    include_existing_comments: bool = Field(default=False, alias="includeExistingComments")
    extra_comments: list[str] = Field(default_factory=list, alias="extraComments")
    replace_existing: bool = Field(default=True, alias="replaceExisting")


class ClassifyResponse(BaseModel):
    ok: bool
    violation_count: int = 0
    ms: int = 0
    summary: Optional[str] = None


class SenderRequest(CamelModel):
    submission_id: str = Field(alias="submissionId", min_length=1)


class SenderResponse(BaseModel):
    ok: bool
    sender_name: Optional[str] = None
    sender_type: str = "unknown"


class ScreenshotRequest(CamelModel):
    case_id: str = Field(alias="caseId", min_length=1)
    url: str = Field(min_length=1)


class ScreenshotResponse(BaseModel):
    ok: bool
    url: Optional[str] = None
    screenshot_ref: Optional[str] = None
    ms: int = 0
    error: Optional[str] = None
    step: Optional[str] = None
    reclassified: Optional[bool] = None


class InboundResponse(BaseModel):
    ok: bool
    id: Optional[str] = None
    duplicate: bool = False
    is_fundraising: Optional[bool] = None
    queued: bool = False
