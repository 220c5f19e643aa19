"""
Consent OTP Request/Response Schemas
"""
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from .Consent_model import OtpMethod, OtpStatus
from .otp_manager import is_valid_code_format


class RequestOtpRequest(BaseModel):
    """Primary doctor requests a consent OTP for a secondary assignment"""
    assignment_id: str = Field(..., examples=["5b1c0a52-3f0e-4c1e-9d53-2b8a1f6d7e10"])
    method: OtpMethod = Field(OtpMethod.SMS, examples=["BOTH"])
    secondary_doctor_id: Optional[str] = None
    secondary_hsp_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_single_secondary(self):
        if self.secondary_doctor_id and self.secondary_hsp_id:
            raise ValueError("Provide either secondary_doctor_id or secondary_hsp_id, not both")
        return self


class ResendOtpRequest(BaseModel):
    otp_id: str = Field(..., examples=["9f4d1b2e-7c55-4a43-8f0a-1e2d3c4b5a69"])


class VerifyOtpRequest(BaseModel):
    """Patient (or clinician on their behalf) submits the 6-digit code"""
    otp_id: str
    otp_code: str = Field(..., examples=["123456"], min_length=6, max_length=6)

    @field_validator('otp_code')
    @classmethod
    def validate_otp_code(cls, v):
        v = v.strip()
        if not is_valid_code_format(v):
            raise ValueError('OTP must be 6 digits')
        return v


class OtpIssueData(BaseModel):
    otp_id: str
    assignment_id: str
    method: OtpMethod
    expires_at: datetime
    expires_in_seconds: int
    sms_sent: bool
    email_sent: bool
    sms_error: Optional[str] = None
    email_error: Optional[str] = None


class OtpIssueResponse(BaseModel):
    status: str = "success"
    message: str
    data: OtpIssueData


class OtpVerificationData(BaseModel):
    otp_id: str
    assignment_id: str
    verified_at: datetime
    access_granted: bool = True


class OtpVerificationResponse(BaseModel):
    status: str = "success"
    message: str
    data: OtpVerificationData


class OtpStatusData(BaseModel):
    otp_id: str
    assignment_id: str
    patient_id: str
    secondary_doctor_id: Optional[str] = None
    secondary_hsp_id: Optional[str] = None
    method: OtpMethod
    status: OtpStatus
    attempts_used: int
    attempts_remaining: int
    max_attempts: int
    generated_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime] = None
    remaining_seconds: int
    sms_sent: bool
    email_sent: bool
    resend_count: int


class OtpStatusResponse(BaseModel):
    status: str = "success"
    message: str
    data: List[OtpStatusData]


class ErrorResponse(BaseModel):
    """Standard error response"""
    status: str = "error"
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
