"""
Consent OTP CRUD Operations

Writes never commit; the workflow owns transaction boundaries.
Guarded updates return the affected row count, 0 meaning the row changed
under the caller.
"""
from datetime import datetime
from typing import List, Optional, Tuple
import logging

from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from .Consent_model import ConsentOtp, ConsentOtpAuditLog

logger = logging.getLogger(__name__)

DispatchOutcome = Optional[Tuple[bool, Optional[str]]]


def get_otp(db: Session, otp_id: str, for_update: bool = False) -> Optional[ConsentOtp]:
    """Get OTP by ID. `for_update` takes a row lock where the dialect supports it."""
    query = db.query(ConsentOtp).filter(ConsentOtp.id == otp_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_active_otp_for_assignment(db: Session, assignment_id: str) -> Optional[ConsentOtp]:
    """The unverified OTP for an assignment, if any"""
    return db.query(ConsentOtp).filter(
        ConsentOtp.assignment_id == assignment_id,
        ConsentOtp.is_verified.is_(False)
    ).first()


def create_otp(
    db: Session,
    assignment_id: str,
    patient_id: str,
    primary_doctor_id: str,
    code: str,
    method: str,
    generated_at: datetime,
    expires_at: datetime,
    max_attempts: int,
    secondary_doctor_id: Optional[str] = None,
    secondary_hsp_id: Optional[str] = None,
    patient_phone: Optional[str] = None,
    patient_email: Optional[str] = None,
    requested_by_user_id: Optional[str] = None,
    request_ip: Optional[str] = None,
    request_user_agent: Optional[str] = None
) -> ConsentOtp:
    otp = ConsentOtp(
        assignment_id=assignment_id,
        patient_id=patient_id,
        primary_doctor_id=primary_doctor_id,
        secondary_doctor_id=secondary_doctor_id,
        secondary_hsp_id=secondary_hsp_id,
        code=code,
        method=method,
        generated_at=generated_at,
        expires_at=expires_at,
        attempts_count=0,
        max_attempts=max_attempts,
        is_verified=False,
        is_expired=False,
        is_blocked=False,
        sms_sent=False,
        email_sent=False,
        resend_count=0,
        patient_phone=patient_phone,
        patient_email=patient_email,
        requested_by_user_id=requested_by_user_id,
        request_ip=request_ip,
        request_user_agent=request_user_agent
    )
    db.add(otp)
    db.flush()
    return otp


def list_otps(
    db: Session,
    patient_id: Optional[str] = None,
    assignment_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    hsp_id: Optional[str] = None
) -> List[ConsentOtp]:
    """
    OTPs matching the given filters, newest first.
    `doctor_id` keeps rows where that doctor is primary or secondary;
    `hsp_id` keeps rows where that HSP is the secondary provider.
    """
    query = db.query(ConsentOtp)
    if patient_id:
        query = query.filter(ConsentOtp.patient_id == patient_id)
    if assignment_id:
        query = query.filter(ConsentOtp.assignment_id == assignment_id)
    if doctor_id:
        query = query.filter(or_(
            ConsentOtp.primary_doctor_id == doctor_id,
            ConsentOtp.secondary_doctor_id == doctor_id
        ))
    if hsp_id:
        query = query.filter(ConsentOtp.secondary_hsp_id == hsp_id)
    return query.order_by(ConsentOtp.generated_at.desc(), ConsentOtp.created_at.desc()).all()


def register_failed_attempt(
    db: Session,
    otp_id: str,
    observed_attempts: int,
    observed_code: str,
    max_attempts: int,
    now: datetime
) -> int:
    """
    Increment attempts_count from the observed value, blocking at the threshold.
    Guarded on the observed count and code so concurrent verifies and resends
    cannot both apply.
    """
    new_count = observed_attempts + 1
    values = {"attempts_count": new_count}
    if new_count >= max_attempts:
        values["is_blocked"] = True
        values["blocked_at"] = now

    result = db.execute(
        update(ConsentOtp)
        .where(
            ConsentOtp.id == otp_id,
            ConsentOtp.attempts_count == observed_attempts,
            ConsentOtp.code == observed_code,
            ConsentOtp.is_verified.is_(False),
            ConsentOtp.is_blocked.is_(False)
        )
        .values(**values)
    )
    return result.rowcount


def mark_verified(
    db: Session,
    otp_id: str,
    observed_code: str,
    observed_attempts: int,
    now: datetime,
    verified_by_user_id: Optional[str] = None
) -> int:
    result = db.execute(
        update(ConsentOtp)
        .where(
            ConsentOtp.id == otp_id,
            ConsentOtp.code == observed_code,
            ConsentOtp.attempts_count == observed_attempts,
            ConsentOtp.is_verified.is_(False),
            ConsentOtp.is_blocked.is_(False),
            ConsentOtp.is_expired.is_(False)
        )
        .values(
            is_verified=True,
            verified_at=now,
            verified_by_user_id=verified_by_user_id
        )
    )
    return result.rowcount


def mark_expired(db: Session, otp_id: str) -> int:
    result = db.execute(
        update(ConsentOtp)
        .where(
            ConsentOtp.id == otp_id,
            ConsentOtp.is_verified.is_(False)
        )
        .values(is_expired=True)
    )
    return result.rowcount


def regenerate_otp(
    db: Session,
    otp_id: str,
    observed_code: str,
    code: str,
    generated_at: datetime,
    expires_at: datetime
) -> int:
    """
    Replace the code and restart the lifecycle of an unverified OTP.
    Clears attempts, expiry, lockout and delivery flags.
    """
    result = db.execute(
        update(ConsentOtp)
        .where(
            ConsentOtp.id == otp_id,
            ConsentOtp.code == observed_code,
            ConsentOtp.is_verified.is_(False)
        )
        .values(
            code=code,
            generated_at=generated_at,
            expires_at=expires_at,
            attempts_count=0,
            is_expired=False,
            is_blocked=False,
            blocked_at=None,
            sms_sent=False,
            sms_sent_at=None,
            sms_error=None,
            email_sent=False,
            email_sent_at=None,
            email_error=None,
            resend_count=ConsentOtp.resend_count + 1
        )
    )
    return result.rowcount


def record_dispatch(
    db: Session,
    otp_id: str,
    code: str,
    sms_result: DispatchOutcome,
    email_result: DispatchOutcome,
    now: datetime
) -> int:
    """
    Persist per-channel delivery outcome. A None result means the channel was not used.
    Guarded on the delivered code, so the result of a superseded send updates nothing.
    """
    values = {}
    if sms_result is not None:
        ok, error = sms_result
        values.update(sms_sent=ok, sms_sent_at=now if ok else None, sms_error=error)
    if email_result is not None:
        ok, error = email_result
        values.update(email_sent=ok, email_sent_at=now if ok else None, email_error=error)
    if not values:
        return 0
    result = db.execute(
        update(ConsentOtp)
        .where(
            ConsentOtp.id == otp_id,
            ConsentOtp.code == code
        )
        .values(**values)
    )
    return result.rowcount


def create_audit_log(
    db: Session,
    event_type: str,
    otp_id: Optional[str] = None,
    assignment_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    reason: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    timestamp: Optional[datetime] = None
) -> ConsentOtpAuditLog:
    """Create audit log entry - never pass OTP values here"""
    log = ConsentOtpAuditLog(
        otp_id=otp_id,
        assignment_id=assignment_id,
        patient_id=patient_id,
        event_type=event_type,
        actor_user_id=actor_user_id,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.add(log)
    db.flush()
    return log
