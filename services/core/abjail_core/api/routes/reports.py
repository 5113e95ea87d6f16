"""Report API routes.

Provides endpoints for:
- POST /api/report-violation - Draft and send a violation report
- GET /api/reports - List stored reports
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from abjail_core.api.deps import Repository, ReportServiceDep
from abjail_core.api.schemas import (
    ReportListResponse,
    ReportResponse,
    ReportViolationRequest,
    ReportViolationResponse,
)

router = APIRouter(prefix="/api", tags=["reports"])

ERROR_STATUS = {
    "missing_report_to": status.HTTP_400_BAD_REQUEST,
    "missing_report_from": status.HTTP_400_BAD_REQUEST,
    "landing_url_required": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "send_failed": status.HTTP_502_BAD_GATEWAY,
}


@router.post(
    "/report-violation",
    response_model=ReportViolationResponse,
    summary="Report a case to the payment platform",
)
async def report_violation(request: ReportViolationRequest, report_service: ReportServiceDep):
    result = await report_service.submit(
        request.case_id,
        landing_url=request.landing_url,
        cc_email=request.cc_email,
        note=request.note,
        violations_override=request.violations_override,
    )
    if not result.ok:
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=result.error,
        )
    return ReportViolationResponse(ok=True, report_id=result.report_id)


@router.get("/reports", response_model=ReportListResponse, summary="List reports")
async def list_reports(
    repo: Repository,
    case_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    reports = repo.list_reports(case_id=case_id, limit=limit)
    return ReportListResponse(
        reports=[ReportResponse.model_validate(r) for r in reports],
        total=len(reports),
    )
