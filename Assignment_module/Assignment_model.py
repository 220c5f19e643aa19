"""
Secondary Assignment Models
"""
from sqlalchemy import Column, String, DateTime, Boolean, func, Index, CheckConstraint
from database import Base
import enum
import uuid


class ConsentStatus(str, enum.Enum):
    """Patient consent status of a secondary assignment"""
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    REQUESTED = "REQUESTED"
    GRANTED = "GRANTED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


class SecondaryAssignment(Base):
    """
    Grants a secondary doctor or HSP access to a patient once the patient consents.
    Owned by the assignment service; the consent workflow only flips the grant fields.
    """
    __tablename__ = "secondary_assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    patient_id = Column(String(36), nullable=False, index=True)
    primary_doctor_id = Column(String(36), nullable=False, index=True)
    secondary_doctor_id = Column(String(36), nullable=True, index=True)
    secondary_hsp_id = Column(String(36), nullable=True, index=True)

    consent_status = Column(String(20), nullable=False, default=ConsentStatus.PENDING.value, index=True)
    access_granted = Column(Boolean, nullable=False, default=False)
    access_granted_at = Column(DateTime(timezone=True), nullable=True)
    consent_granted_by_user_id = Column(String(36), nullable=True)

    # Patient contact (denormalized for OTP delivery)
    patient_phone = Column(String(20), nullable=True)
    patient_email = Column(String(255), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        Index('idx_assignment_patient_status', 'patient_id', 'consent_status'),
        CheckConstraint(
            '(secondary_doctor_id IS NOT NULL) OR (secondary_hsp_id IS NOT NULL)',
            name='assignment_has_secondary_doctor_or_hsp'
        ),
    )
