"""Report API schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from abjail_core.api.schemas.pipeline import CamelModel


class ReportViolationRequest(CamelModel):
    case_id: str = Field(alias="caseId", min_length=1)
    landing_url: Optional[str] = Field(default=None, alias="landingUrl")
    cc_email: Optional[str] = Field(default=None, alias="ccEmail")
    note: Optional[str] = None
    violations_override: Optional[str] = Field(default=None, alias="violationsOverride")


class ReportViolationResponse(BaseModel):
    ok: bool
    report_id: Optional[str] = None


class ReportResponse(BaseModel):
    """Response schema for a stored report."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    case_id: str
    to_email: str
    cc_email: Optional[str] = None
    subject: str
    landing_url: str
    screenshot_url: Optional[str] = None
    status: str
    error: Optional[str] = None
    created_at: datetime
    sent_at: Optional[datetime] = None


class ReportListResponse(BaseModel):
    reports: list[ReportResponse]
    total: int
