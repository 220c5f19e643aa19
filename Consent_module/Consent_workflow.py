"""
Patient consent OTP workflow.

A primary doctor requests an OTP for a secondary assignment, the patient
receives it by SMS and/or email, and a correct verification grants the
secondary doctor or HSP access to the patient.

State per OTP: PENDING -> VERIFIED | EXPIRED | BLOCKED. EXPIRED and BLOCKED
return to PENDING only through resend; VERIFIED is terminal.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from Assignment_module import Assignment_crud
from Assignment_module.Assignment_model import ConsentStatus
from Auth_module.auth_user import CurrentUser, can_manage_consent, provider_scope
from Notification_module.Notification_dispatcher import NotificationDispatcher
from Utils.datetime_utils import now_utc, to_utc, seconds_until
from . import Consent_crud
from .Consent_model import ConsentOtp, OtpMethod, OtpStatus
from .Consent_errors import (
    NotFoundError,
    ForbiddenError,
    ValidationError,
    ConflictError,
    ExpiredError,
    LockedError,
    InvalidCodeError,
    InternalError,
)
from .otp_manager import generate_otp, generate_distinct_otp

logger = logging.getLogger(__name__)

# Audit event types
EVENT_GENERATED = "GENERATED"
EVENT_RESENT = "RESENT"
EVENT_FAILED = "FAILED"
EVENT_BLOCKED = "BLOCKED"
EVENT_EXPIRED = "EXPIRED"
EVENT_VERIFIED = "VERIFIED"
EVENT_DISPATCHED = "DISPATCHED"

EMAIL_SUBJECT = "Healthcare Consent Verification"
EMAIL_SUBJECT_RESEND = "NEW Healthcare Consent Verification OTP"


@dataclass
class OtpIssueResult:
    otp_id: str
    assignment_id: str
    expires_at: datetime
    method: OtpMethod
    sms_sent: bool = False
    email_sent: bool = False
    sms_error: Optional[str] = None
    email_error: Optional[str] = None


@dataclass
class OtpVerificationResult:
    otp_id: str
    assignment_id: str
    verified_at: datetime


@dataclass
class OtpStatusSummary:
    otp_id: str
    assignment_id: str
    patient_id: str
    secondary_doctor_id: Optional[str]
    secondary_hsp_id: Optional[str]
    method: OtpMethod
    status: OtpStatus
    attempts_used: int
    attempts_remaining: int
    max_attempts: int
    generated_at: datetime
    expires_at: datetime
    verified_at: Optional[datetime]
    remaining_seconds: int
    sms_sent: bool
    email_sent: bool
    resend_count: int


class ConsentOtpWorkflow:
    """One instance per unit of work; shares the caller's Session."""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = now_utc,
        code_generator: Callable[[], str] = generate_otp,
        expiry_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        cas_retries: Optional[int] = None
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.clock = clock
        self.code_generator = code_generator
        self.expiry_minutes = expiry_minutes or settings.CONSENT_OTP_EXPIRY_MINUTES
        self.max_attempts = max_attempts or settings.CONSENT_OTP_MAX_ATTEMPTS
        self.cas_retries = cas_retries or settings.CONSENT_OTP_CAS_RETRIES

    # ------------------------------------------------------------------
    # request
    # ------------------------------------------------------------------
    def request_otp(
        self,
        assignment_id: str,
        patient_id: str,
        method,
        requester: CurrentUser,
        secondary_doctor_id: Optional[str] = None,
        secondary_hsp_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> OtpIssueResult:
        """
        Issue a fresh OTP for an assignment and deliver it to the patient.
        Fails with ConflictError while an unverified OTP exists; use resend for that.
        """
        assignment = Assignment_crud.get_assignment(self.db, assignment_id)
        if not assignment:
            raise NotFoundError("Assignment not found")

        if assignment.patient_id != patient_id:
            raise ValidationError("Assignment does not belong to this patient")
        if not assignment.is_active:
            raise ValidationError("Assignment is not active")
        if bool(assignment.secondary_doctor_id) == bool(assignment.secondary_hsp_id):
            raise ValidationError("Assignment must name exactly one secondary doctor or HSP")
        if secondary_doctor_id and secondary_doctor_id != assignment.secondary_doctor_id:
            raise ValidationError("Secondary doctor does not match the assignment")
        if secondary_hsp_id and secondary_hsp_id != assignment.secondary_hsp_id:
            raise ValidationError("Secondary HSP does not match the assignment")

        try:
            otp_method = OtpMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported delivery method: {method}")

        if not can_manage_consent(requester, assignment.primary_doctor_id):
            raise ForbiddenError("Only the primary doctor can request patient consent")

        if assignment.consent_status == ConsentStatus.GRANTED.value:
            raise ConflictError("Consent already granted for this assignment")

        existing = Consent_crud.get_active_otp_for_assignment(self.db, assignment.id)
        if existing:
            raise ConflictError(
                "An OTP is already pending for this assignment. Use resend instead.",
                {"otp_id": existing.id}
            )

        now = self.clock()
        expires_at = now + timedelta(minutes=self.expiry_minutes)
        code = self.code_generator()

        try:
            otp = Consent_crud.create_otp(
                self.db,
                assignment_id=assignment.id,
                patient_id=assignment.patient_id,
                primary_doctor_id=assignment.primary_doctor_id,
                secondary_doctor_id=assignment.secondary_doctor_id,
                secondary_hsp_id=assignment.secondary_hsp_id,
                code=code,
                method=otp_method.value,
                generated_at=now,
                expires_at=expires_at,
                max_attempts=self.max_attempts,
                patient_phone=assignment.patient_phone,
                patient_email=assignment.patient_email,
                requested_by_user_id=requester.user_id,
                request_ip=ip_address,
                request_user_agent=user_agent
            )
            otp_id = otp.id
            Consent_crud.create_audit_log(
                self.db,
                EVENT_GENERATED,
                otp_id=otp_id,
                assignment_id=assignment.id,
                patient_id=assignment.patient_id,
                actor_user_id=requester.user_id,
                reason=f"method={otp_method.value}",
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=now
            )
            Assignment_crud.mark_consent_requested(self.db, assignment.id)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Concurrent consent OTP request lost for assignment {assignment_id}")
            raise ConflictError("An OTP is already pending for this assignment. Use resend instead.")
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Failed to create consent OTP for assignment {assignment_id}", exc_info=True)
            raise InternalError("Failed to create consent OTP")

        logger.info(
            f"Consent OTP {otp_id} generated for assignment {assignment_id} "
            f"(patient {patient_id}, method {otp_method.value}) by user {requester.user_id}"
        )

        return self._deliver(
            otp_id=otp_id,
            assignment_id=assignment_id,
            patient_id=patient_id,
            code=code,
            method=otp_method,
            expires_at=expires_at,
            phone=assignment.patient_phone,
            email=assignment.patient_email,
            is_resend=False,
            actor_user_id=requester.user_id
        )

    # ------------------------------------------------------------------
    # resend
    # ------------------------------------------------------------------
    def resend_otp(
        self,
        otp_id: str,
        patient_id: str,
        requester: CurrentUser,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> OtpIssueResult:
        """Replace the code, clear attempts/expiry/lockout and redeliver on the original channel(s)."""
        for _ in range(self.cas_retries):
            otp = Consent_crud.get_otp(self.db, otp_id)
            if not otp:
                raise NotFoundError("OTP not found")
            if otp.patient_id != patient_id:
                raise ValidationError("Invalid patient for this OTP")

            assignment = Assignment_crud.get_assignment(self.db, otp.assignment_id)
            primary_doctor_id = assignment.primary_doctor_id if assignment else otp.primary_doctor_id
            if not can_manage_consent(requester, primary_doctor_id):
                raise ForbiddenError("Only the primary doctor can resend the consent OTP")

            if otp.is_verified:
                raise ConflictError("OTP already verified")

            now = self.clock()
            expires_at = now + timedelta(minutes=self.expiry_minutes)
            previous_code = otp.code
            code = generate_distinct_otp(previous_code, self.code_generator)
            assignment_id = otp.assignment_id
            method = otp.otp_method
            phone, email = otp.patient_phone, otp.patient_email

            try:
                rows = Consent_crud.regenerate_otp(
                    self.db, otp_id, previous_code, code, now, expires_at
                )
                if rows == 0:
                    self.db.rollback()
                    logger.warning(f"Consent OTP {otp_id} changed during resend, retrying")
                    continue

                Consent_crud.create_audit_log(
                    self.db,
                    EVENT_RESENT,
                    otp_id=otp_id,
                    assignment_id=assignment_id,
                    patient_id=patient_id,
                    actor_user_id=requester.user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    timestamp=now
                )
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                logger.error(f"Failed to regenerate consent OTP {otp_id}", exc_info=True)
                raise InternalError("Failed to resend consent OTP")

            logger.info(f"Consent OTP {otp_id} regenerated by user {requester.user_id}")

            return self._deliver(
                otp_id=otp_id,
                assignment_id=assignment_id,
                patient_id=patient_id,
                code=code,
                method=method,
                expires_at=expires_at,
                phone=phone,
                email=email,
                is_resend=True,
                actor_user_id=requester.user_id
            )

        logger.warning(f"Gave up resending consent OTP {otp_id} after {self.cas_retries} concurrent changes")
        raise ConflictError("OTP was modified concurrently. Please retry.")

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------
    def verify_otp(
        self,
        otp_id: str,
        patient_id: str,
        code: str,
        requester: CurrentUser,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> OtpVerificationResult:
        """
        Check a submitted code.

        Expiry is checked before lockout, and neither consumes an attempt.
        A correct code marks the OTP verified and grants the assignment in a
        single transaction.
        """
        for _ in range(self.cas_retries):
            otp = Consent_crud.get_otp(self.db, otp_id, for_update=True)
            if not otp:
                self.db.rollback()
                raise NotFoundError("OTP not found")
            if otp.patient_id != patient_id:
                self.db.rollback()
                raise ValidationError("Invalid patient for this OTP")
            if otp.is_verified:
                self.db.rollback()
                raise ConflictError("OTP already used")

            now = self.clock()
            assignment_id = otp.assignment_id

            if otp.is_expired or otp.is_past_expiry(now):
                self._persist_expiry(otp, requester, now, ip_address, user_agent)
                raise ExpiredError()

            if otp.is_blocked or otp.attempts_count >= otp.max_attempts:
                self.db.rollback()
                raise LockedError()

            observed_attempts = otp.attempts_count
            observed_code = otp.code
            max_attempts = otp.max_attempts

            if code != observed_code:
                new_count = observed_attempts + 1
                blocked = new_count >= max_attempts
                try:
                    rows = Consent_crud.register_failed_attempt(
                        self.db, otp_id, observed_attempts, observed_code, max_attempts, now
                    )
                    if rows == 0:
                        self.db.rollback()
                        logger.warning(f"Consent OTP {otp_id} changed during verification, retrying")
                        continue

                    Consent_crud.create_audit_log(
                        self.db,
                        EVENT_BLOCKED if blocked else EVENT_FAILED,
                        otp_id=otp_id,
                        assignment_id=assignment_id,
                        patient_id=patient_id,
                        actor_user_id=requester.user_id,
                        reason=f"Failed attempt {new_count}/{max_attempts}",
                        ip_address=ip_address,
                        user_agent=user_agent,
                        timestamp=now
                    )
                    self.db.commit()
                except SQLAlchemyError:
                    self.db.rollback()
                    logger.error(f"Failed to record attempt for consent OTP {otp_id}", exc_info=True)
                    raise InternalError("Failed to verify consent OTP")

                if blocked:
                    logger.warning(f"Consent OTP {otp_id} blocked after {new_count} failed attempts")
                else:
                    logger.info(f"Consent OTP {otp_id} failed attempt {new_count}/{max_attempts}")
                raise InvalidCodeError(attempts_remaining=max(0, max_attempts - new_count))

            try:
                rows = Consent_crud.mark_verified(
                    self.db, otp_id, observed_code, observed_attempts, now, requester.user_id
                )
                if rows == 0:
                    self.db.rollback()
                    logger.warning(f"Consent OTP {otp_id} changed during verification, retrying")
                    continue

                granted = Assignment_crud.grant_access(
                    self.db, assignment_id, now, requester.user_id
                )
                if granted == 0:
                    self.db.rollback()
                    logger.error(f"Assignment {assignment_id} missing while verifying consent OTP {otp_id}")
                    raise InternalError("Failed to record consent. Please try again.")

                Consent_crud.create_audit_log(
                    self.db,
                    EVENT_VERIFIED,
                    otp_id=otp_id,
                    assignment_id=assignment_id,
                    patient_id=patient_id,
                    actor_user_id=requester.user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    timestamp=now
                )
                self.db.commit()
            except SQLAlchemyError:
                self.db.rollback()
                logger.error(
                    f"Failed to grant consent for assignment {assignment_id} (OTP {otp_id}); rolled back",
                    exc_info=True
                )
                raise InternalError("Failed to record consent. Please try again.")

            logger.info(
                f"Consent OTP {otp_id} verified by user {requester.user_id}; "
                f"access granted on assignment {assignment_id}"
            )
            return OtpVerificationResult(otp_id=otp_id, assignment_id=assignment_id, verified_at=now)

        logger.warning(f"Gave up verifying consent OTP {otp_id} after {self.cas_retries} concurrent changes")
        raise ConflictError("OTP was modified concurrently. Please retry.")

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    def get_status(
        self,
        patient_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
        requester: Optional[CurrentUser] = None
    ) -> List[OtpStatusSummary]:
        """
        Read-only view of OTPs for a patient and/or assignment, newest first.
        With a requester, doctors and HSPs only see OTPs of assignments they belong to.
        """
        if not patient_id and not assignment_id:
            raise ValidationError("patient_id or assignment_id is required")

        doctor_id, hsp_id = provider_scope(requester) if requester else (None, None)
        if doctor_id == "" or hsp_id == "":
            return []

        now = self.clock()
        otps = Consent_crud.list_otps(
            self.db,
            patient_id=patient_id,
            assignment_id=assignment_id,
            doctor_id=doctor_id,
            hsp_id=hsp_id
        )
        return [self._summarize(otp, now) for otp in otps]

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _persist_expiry(
        self,
        otp: ConsentOtp,
        requester: CurrentUser,
        now: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str]
    ) -> None:
        if otp.is_expired:
            self.db.rollback()
            return

        otp_id, assignment_id, patient_id = otp.id, otp.assignment_id, otp.patient_id
        try:
            if Consent_crud.mark_expired(self.db, otp_id):
                Consent_crud.create_audit_log(
                    self.db,
                    EVENT_EXPIRED,
                    otp_id=otp_id,
                    assignment_id=assignment_id,
                    patient_id=patient_id,
                    actor_user_id=requester.user_id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    timestamp=now
                )
            self.db.commit()
            logger.info(f"Consent OTP {otp_id} expired")
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Failed to persist expiry for consent OTP {otp_id}", exc_info=True)

    def _send(self, channel: str, send: Callable[..., Tuple[bool, Optional[str]]], *args) -> Tuple[bool, Optional[str]]:
        try:
            return send(*args)
        except Exception as e:
            logger.error(f"Consent OTP {channel} dispatch raised: {e}", exc_info=True)
            return False, str(e)

    def _deliver(
        self,
        otp_id: str,
        assignment_id: str,
        patient_id: str,
        code: str,
        method: OtpMethod,
        expires_at: datetime,
        phone: Optional[str],
        email: Optional[str],
        is_resend: bool,
        actor_user_id: Optional[str]
    ) -> OtpIssueResult:
        """
        Deliver after the OTP is committed. Delivery failures are recorded on
        the OTP and returned, never raised.
        """
        sms_result = None
        email_result = None

        if method.uses_sms:
            if is_resend:
                message = (
                    f"Your NEW consent OTP is: {code}. Previous OTP is now invalid. "
                    f"Valid for {self.expiry_minutes} minutes."
                )
            else:
                message = f"Your consent OTP is: {code}. Valid for {self.expiry_minutes} minutes."
            sms_result = self._send("sms", self.dispatcher.send_sms, phone, message)

        if method.uses_email:
            subject = EMAIL_SUBJECT_RESEND if is_resend else EMAIL_SUBJECT
            body = (
                f"Your consent verification code is {code}.\n\n"
                f"It is valid for {self.expiry_minutes} minutes. Share it only with your doctor "
                f"to allow a secondary care provider to access your records.\n"
            )
            if is_resend:
                body += "Any previously sent code is no longer valid.\n"
            email_result = self._send("email", self.dispatcher.send_email, email, subject, body)

        now = self.clock()
        try:
            if not Consent_crud.record_dispatch(self.db, otp_id, code, sms_result, email_result, now):
                logger.info(f"Consent OTP {otp_id} was reissued before delivery status was recorded")
            Consent_crud.create_audit_log(
                self.db,
                EVENT_DISPATCHED,
                otp_id=otp_id,
                assignment_id=assignment_id,
                patient_id=patient_id,
                actor_user_id=actor_user_id,
                reason=_dispatch_reason(sms_result, email_result),
                timestamp=now
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Failed to record delivery status for consent OTP {otp_id}", exc_info=True)

        for channel, result in (("SMS", sms_result), ("email", email_result)):
            if result is not None and not result[0]:
                logger.warning(f"Consent OTP {otp_id} {channel} delivery failed: {result[1]}")

        return OtpIssueResult(
            otp_id=otp_id,
            assignment_id=assignment_id,
            expires_at=expires_at,
            method=method,
            sms_sent=bool(sms_result and sms_result[0]),
            email_sent=bool(email_result and email_result[0]),
            sms_error=sms_result[1] if sms_result else None,
            email_error=email_result[1] if email_result else None
        )

    def _summarize(self, otp: ConsentOtp, now: datetime) -> OtpStatusSummary:
        status = otp.status_at(now)
        return OtpStatusSummary(
            otp_id=otp.id,
            assignment_id=otp.assignment_id,
            patient_id=otp.patient_id,
            secondary_doctor_id=otp.secondary_doctor_id,
            secondary_hsp_id=otp.secondary_hsp_id,
            method=otp.otp_method,
            status=status,
            attempts_used=otp.attempts_count,
            attempts_remaining=otp.attempts_remaining,
            max_attempts=otp.max_attempts,
            generated_at=to_utc(otp.generated_at),
            expires_at=to_utc(otp.expires_at),
            verified_at=to_utc(otp.verified_at),
            remaining_seconds=seconds_until(otp.expires_at, now) if status == OtpStatus.PENDING else 0,
            sms_sent=bool(otp.sms_sent),
            email_sent=bool(otp.email_sent),
            resend_count=otp.resend_count or 0
        )


def _dispatch_reason(sms_result, email_result) -> str:
    parts = []
    if sms_result is not None:
        parts.append("sms=sent" if sms_result[0] else f"sms=failed ({sms_result[1]})")
    if email_result is not None:
        parts.append("email=sent" if email_result[0] else f"email=failed ({email_result[1]})")
    return ", ".join(parts)
