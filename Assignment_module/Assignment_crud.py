"""
Secondary Assignment CRUD Operations
"""
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from .Assignment_model import SecondaryAssignment, ConsentStatus

logger = logging.getLogger(__name__)


def get_assignment(db: Session, assignment_id: str) -> Optional[SecondaryAssignment]:
    """Get assignment by ID"""
    return db.query(SecondaryAssignment).filter(
        SecondaryAssignment.id == assignment_id
    ).first()


def create_assignment(
    db: Session,
    patient_id: str,
    primary_doctor_id: str,
    secondary_doctor_id: Optional[str] = None,
    secondary_hsp_id: Optional[str] = None,
    patient_phone: Optional[str] = None,
    patient_email: Optional[str] = None,
    consent_status: ConsentStatus = ConsentStatus.PENDING
) -> SecondaryAssignment:
    """Create a secondary assignment awaiting patient consent"""
    assignment = SecondaryAssignment(
        patient_id=patient_id,
        primary_doctor_id=primary_doctor_id,
        secondary_doctor_id=secondary_doctor_id,
        secondary_hsp_id=secondary_hsp_id,
        patient_phone=patient_phone,
        patient_email=patient_email,
        consent_status=consent_status.value,
        access_granted=False
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    return assignment


def update_assignment(db: Session, assignment_id: str, **fields) -> int:
    """Partial update; returns number of rows touched. Caller owns the transaction."""
    result = db.execute(
        update(SecondaryAssignment)
        .where(SecondaryAssignment.id == assignment_id)
        .values(**fields)
    )
    return result.rowcount


def mark_consent_requested(db: Session, assignment_id: str) -> int:
    """PENDING -> REQUESTED once an OTP has been issued. Never touches a granted assignment."""
    result = db.execute(
        update(SecondaryAssignment)
        .where(
            SecondaryAssignment.id == assignment_id,
            SecondaryAssignment.consent_status == ConsentStatus.PENDING.value
        )
        .values(consent_status=ConsentStatus.REQUESTED.value)
    )
    return result.rowcount


def grant_access(
    db: Session,
    assignment_id: str,
    granted_at: datetime,
    granted_by_user_id: Optional[str] = None
) -> int:
    """
    Flip the grant fields together. Runs inside the verification transaction;
    the caller commits or rolls back.
    """
    return update_assignment(
        db,
        assignment_id,
        consent_status=ConsentStatus.GRANTED.value,
        access_granted=True,
        access_granted_at=granted_at,
        consent_granted_by_user_id=granted_by_user_id
    )
