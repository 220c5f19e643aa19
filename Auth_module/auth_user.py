"""
Authorization gate for consent operations.

Identity comes from the platform's bearer token; roles are a closed enum and
every consent check goes through a capability set instead of role strings.
"""
import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from . import security

security_scheme = HTTPBearer()


class Role(str, enum.Enum):
    DOCTOR = "DOCTOR"
    HSP = "HSP"
    PATIENT = "PATIENT"
    HOSPITAL_ADMIN = "HOSPITAL_ADMIN"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"


class Capability(str, enum.Enum):
    MANAGE_CONSENT = "MANAGE_CONSENT"  # request/resend for assignments where caller is primary doctor
    OVERRIDE_CONSENT = "OVERRIDE_CONSENT"  # request/resend for any assignment
    VERIFY_CONSENT = "VERIFY_CONSENT"
    VIEW_CONSENT_STATUS = "VIEW_CONSENT_STATUS"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.DOCTOR: frozenset({
        Capability.MANAGE_CONSENT,
        Capability.VERIFY_CONSENT,
        Capability.VIEW_CONSENT_STATUS,
    }),
    Role.HSP: frozenset({
        Capability.VERIFY_CONSENT,
        Capability.VIEW_CONSENT_STATUS,
    }),
    Role.PATIENT: frozenset({
        Capability.VERIFY_CONSENT,
        Capability.VIEW_CONSENT_STATUS,
    }),
    Role.HOSPITAL_ADMIN: frozenset({
        Capability.VIEW_CONSENT_STATUS,
    }),
    Role.SYSTEM_ADMIN: frozenset(Capability),
}


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    role: Role
    # Doctor / HSP / patient profile id, depending on role
    profile_id: Optional[str] = None

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return ROLE_CAPABILITIES.get(self.role, frozenset())

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities


def can_manage_consent(user: CurrentUser, primary_doctor_id: str) -> bool:
    """Primary doctor of the assignment, or anyone holding the override capability."""
    if user.has_capability(Capability.OVERRIDE_CONSENT):
        return True
    return (
        user.has_capability(Capability.MANAGE_CONSENT)
        and user.profile_id is not None
        and user.profile_id == primary_doctor_id
    )


def can_act_for_patient(user: CurrentUser, patient_id: str, capability: Capability) -> bool:
    """Patients may only act on their own consent; other roles need the capability."""
    if not user.has_capability(capability):
        return False
    if user.role == Role.PATIENT:
        return user.profile_id == patient_id
    return True


def provider_scope(user: CurrentUser) -> Tuple[Optional[str], Optional[str]]:
    """
    (doctor_id, hsp_id) a care provider's status views are limited to.
    Doctors see assignments where they are primary or secondary doctor;
    HSPs see assignments where they are the secondary HSP. Other roles are unscoped.
    """
    if user.role == Role.DOCTOR:
        return user.profile_id or "", None
    if user.role == Role.HSP:
        return None, user.profile_id or ""
    return None, None


def can_view_assignment(user: CurrentUser, assignment) -> bool:
    if not can_act_for_patient(user, assignment.patient_id, Capability.VIEW_CONSENT_STATUS):
        return False
    doctor_id, hsp_id = provider_scope(user)
    if doctor_id is not None:
        return bool(doctor_id) and doctor_id in (assignment.primary_doctor_id, assignment.secondary_doctor_id)
    if hsp_id is not None:
        return bool(hsp_id) and hsp_id == assignment.secondary_hsp_id
    return True


def require_patient_access(user: CurrentUser, patient_id: str, capability: Capability) -> None:
    if not can_act_for_patient(user, patient_id, capability):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to perform this consent action for this patient"
        )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security_scheme)
) -> CurrentUser:
    """
    Validates the bearer token and returns the caller's identity and role.
    """
    payload = security.decode_access_token(credentials.credentials)

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not contain user info"
        )

    try:
        role = Role(str(payload.get("role", "")).upper())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token does not carry a recognised role"
        )

    profile_id = payload.get("profile_id")
    return CurrentUser(
        user_id=str(user_id),
        role=role,
        profile_id=str(profile_id) if profile_id is not None else None
    )
