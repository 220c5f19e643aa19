"""
Consent Router - patient consent OTP endpoints for secondary assignments
"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from typing import Optional
import logging

from deps import get_db
from Assignment_module import Assignment_crud
from Auth_module.auth_user import (
    Capability,
    CurrentUser,
    can_view_assignment,
    get_current_user,
    require_patient_access,
)
from Notification_module.Notification_dispatcher import NotificationDispatcher, get_notification_dispatcher
from Utils.datetime_utils import seconds_until, now_utc
from Utils.rate_limiter import check_ip_rate_limit, get_client_ip
from .Consent_errors import NotFoundError
from .Consent_schema import (
    RequestOtpRequest,
    ResendOtpRequest,
    VerifyOtpRequest,
    OtpIssueData,
    OtpIssueResponse,
    OtpVerificationData,
    OtpVerificationResponse,
    OtpStatusData,
    OtpStatusResponse,
)
from .Consent_workflow import ConsentOtpWorkflow, OtpIssueResult

router = APIRouter(prefix="/consent", tags=["Patient Consent"])

logger = logging.getLogger(__name__)


def get_consent_workflow(
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher)
) -> ConsentOtpWorkflow:
    return ConsentOtpWorkflow(db, dispatcher)


def _issue_data(result: OtpIssueResult) -> OtpIssueData:
    return OtpIssueData(
        otp_id=result.otp_id,
        assignment_id=result.assignment_id,
        method=result.method,
        expires_at=result.expires_at,
        expires_in_seconds=seconds_until(result.expires_at, now_utc()),
        sms_sent=result.sms_sent,
        email_sent=result.email_sent,
        sms_error=result.sms_error,
        email_error=result.email_error
    )


def _issue_message(result: OtpIssueResult, action: str) -> str:
    if (result.sms_error or result.email_error) and not (result.sms_sent or result.email_sent):
        return f"OTP {action} but could not be delivered to the patient"
    return f"OTP {action} successfully to the patient"


@router.post("/{patient_id}/request-otp", response_model=OtpIssueResponse, status_code=status.HTTP_201_CREATED)
def request_consent_otp(
    patient_id: str,
    request: RequestOtpRequest,
    http_request: Request,
    workflow: ConsentOtpWorkflow = Depends(get_consent_workflow),
    current_user: CurrentUser = Depends(get_current_user)
):
    """
    Send a consent OTP to the patient for a secondary assignment.
    Only the assignment's primary doctor (or a system admin) may call this.
    """
    result = workflow.request_otp(
        assignment_id=request.assignment_id,
        patient_id=patient_id,
        method=request.method,
        requester=current_user,
        secondary_doctor_id=request.secondary_doctor_id,
        secondary_hsp_id=request.secondary_hsp_id,
        ip_address=get_client_ip(http_request),
        user_agent=http_request.headers.get("user-agent")
    )
    return OtpIssueResponse(message=_issue_message(result, "sent"), data=_issue_data(result))


@router.post("/{patient_id}/resend-otp", response_model=OtpIssueResponse)
def resend_consent_otp(
    patient_id: str,
    request: ResendOtpRequest,
    http_request: Request,
    workflow: ConsentOtpWorkflow = Depends(get_consent_workflow),
    current_user: CurrentUser = Depends(get_current_user)
):
    """
    Regenerate the OTP. The previous code stops working and attempts are reset.
    """
    result = workflow.resend_otp(
        otp_id=request.otp_id,
        patient_id=patient_id,
        requester=current_user,
        ip_address=get_client_ip(http_request),
        user_agent=http_request.headers.get("user-agent")
    )
    return OtpIssueResponse(message=_issue_message(result, "resent"), data=_issue_data(result))


@router.post("/{patient_id}/verify-otp", response_model=OtpVerificationResponse)
def verify_consent_otp(
    patient_id: str,
    request: VerifyOtpRequest,
    http_request: Request,
    workflow: ConsentOtpWorkflow = Depends(get_consent_workflow),
    current_user: CurrentUser = Depends(get_current_user)
):
    """
    Verify the patient's OTP. On success the secondary doctor/HSP gains access.
    """
    ip_address = get_client_ip(http_request)

    # IP-based rate limiting (prevents brute force from same IP)
    is_allowed, _ = check_ip_rate_limit(ip_address)
    if not is_allowed:
        logger.warning(f"Consent OTP verification rate limit exceeded for IP {ip_address}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many verification attempts from this IP address. Please try again later."
        )

    require_patient_access(current_user, patient_id, Capability.VERIFY_CONSENT)

    result = workflow.verify_otp(
        otp_id=request.otp_id,
        patient_id=patient_id,
        code=request.otp_code,
        requester=current_user,
        ip_address=ip_address,
        user_agent=http_request.headers.get("user-agent")
    )
    return OtpVerificationResponse(
        message="Consent verified. Access granted.",
        data=OtpVerificationData(
            otp_id=result.otp_id,
            assignment_id=result.assignment_id,
            verified_at=result.verified_at
        )
    )


@router.get("/{patient_id}/status", response_model=OtpStatusResponse)
def get_patient_consent_status(
    patient_id: str,
    assignment_id: Optional[str] = None,
    workflow: ConsentOtpWorkflow = Depends(get_consent_workflow),
    current_user: CurrentUser = Depends(get_current_user)
):
    """List consent OTPs for a patient, optionally narrowed to one assignment."""
    require_patient_access(current_user, patient_id, Capability.VIEW_CONSENT_STATUS)

    summaries = workflow.get_status(
        patient_id=patient_id,
        assignment_id=assignment_id,
        requester=current_user
    )
    return OtpStatusResponse(
        message=f"Found {len(summaries)} consent OTP(s)",
        data=[OtpStatusData(**vars(summary)) for summary in summaries]
    )


@router.get("/assignments/{assignment_id}/status", response_model=OtpStatusResponse)
def get_assignment_consent_status(
    assignment_id: str,
    workflow: ConsentOtpWorkflow = Depends(get_consent_workflow),
    current_user: CurrentUser = Depends(get_current_user)
):
    """List consent OTPs for one assignment."""
    assignment = Assignment_crud.get_assignment(workflow.db, assignment_id)
    if not assignment:
        raise NotFoundError("Assignment not found")
    if not can_view_assignment(current_user, assignment):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to view consent for this assignment"
        )

    summaries = workflow.get_status(assignment_id=assignment_id, requester=current_user)
    return OtpStatusResponse(
        message=f"Found {len(summaries)} consent OTP(s)",
        data=[OtpStatusData(**vars(summary)) for summary in summaries]
    )
