from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, func, Index, Text, text
from sqlalchemy.orm import relationship
from database import Base
from Utils.datetime_utils import to_utc
import enum
import uuid


class OtpMethod(str, enum.Enum):
    """Delivery channel(s) chosen when the OTP is requested"""
    SMS = "SMS"
    EMAIL = "EMAIL"
    BOTH = "BOTH"

    @property
    def uses_sms(self) -> bool:
        return self in (OtpMethod.SMS, OtpMethod.BOTH)

    @property
    def uses_email(self) -> bool:
        return self in (OtpMethod.EMAIL, OtpMethod.BOTH)


class OtpStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"
    BLOCKED = "BLOCKED"


class ConsentOtp(Base):
    """
    Patient consent OTP for a secondary assignment.
    One row per assignment lifecycle; resend mutates the row in place.
    """
    __tablename__ = "patient_consent_otps"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    assignment_id = Column(String(36), ForeignKey("secondary_assignments.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id = Column(String(36), nullable=False, index=True)
    primary_doctor_id = Column(String(36), nullable=False, index=True)
    secondary_doctor_id = Column(String(36), nullable=True)
    secondary_hsp_id = Column(String(36), nullable=True)

    code = Column(String(6), nullable=False)
    method = Column(String(10), nullable=False, default=OtpMethod.SMS.value)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    attempts_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    is_verified = Column(Boolean, nullable=False, default=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by_user_id = Column(String(36), nullable=True)
    is_expired = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    blocked_at = Column(DateTime(timezone=True), nullable=True)

    # Delivery bookkeeping
    sms_sent = Column(Boolean, nullable=False, default=False)
    sms_sent_at = Column(DateTime(timezone=True), nullable=True)
    sms_error = Column(Text, nullable=True)
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    email_error = Column(Text, nullable=True)

    # Destination snapshot at generation time
    patient_phone = Column(String(20), nullable=True)
    patient_email = Column(String(255), nullable=True)

    resend_count = Column(Integer, nullable=False, default=0)

    # Request provenance
    requested_by_user_id = Column(String(36), nullable=True)
    request_ip = Column(String(50), nullable=True)
    request_user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    assignment = relationship("SecondaryAssignment", foreign_keys=[assignment_id])

    __table_args__ = (
        # At most one live OTP per assignment
        Index(
            'uq_active_consent_otp_per_assignment',
            'assignment_id',
            unique=True,
            sqlite_where=text('is_verified = 0'),
            postgresql_where=text('is_verified = false'),
        ),
        Index('idx_consent_otp_patient_created', 'patient_id', 'created_at'),
    )

    @property
    def otp_method(self) -> OtpMethod:
        return OtpMethod(self.method)

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_count)

    def is_past_expiry(self, now) -> bool:
        return to_utc(now) > to_utc(self.expires_at)

    def status_at(self, now) -> OtpStatus:
        """Derived status; verified wins, then expiry, then lockout."""
        if self.is_verified:
            return OtpStatus.VERIFIED
        if self.is_expired or self.is_past_expiry(now):
            return OtpStatus.EXPIRED
        if self.is_blocked or self.attempts_count >= self.max_attempts:
            return OtpStatus.BLOCKED
        return OtpStatus.PENDING


class ConsentOtpAuditLog(Base):
    """
    Consent OTP audit log - tracks events only, no OTP values stored.
    Event types: GENERATED, RESENT, FAILED, BLOCKED, EXPIRED, VERIFIED, DISPATCHED
    """
    __tablename__ = "consent_otp_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    otp_id = Column(String(36), ForeignKey("patient_consent_otps.id", ondelete="SET NULL"), nullable=True, index=True)
    assignment_id = Column(String(36), nullable=True, index=True)
    patient_id = Column(String(36), nullable=True, index=True)
    event_type = Column(String(20), nullable=False, index=True)
    actor_user_id = Column(String(36), nullable=True, index=True)
    reason = Column(Text, nullable=True)  # Attempt count, channel errors, etc.
    ip_address = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
