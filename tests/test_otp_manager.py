import re
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from Consent_module.Consent_model import ConsentOtp, OtpMethod, OtpStatus
from Consent_module.otp_manager import generate_distinct_otp, generate_otp, is_valid_code_format


def test_generated_codes_are_six_digits():
    for _ in range(500):
        code = generate_otp()
        assert re.match(r"^\d{6}$", code)
        assert 100000 <= int(code) <= 999999


@patch("Consent_module.otp_manager.secrets.randbelow")
def test_generated_code_range_bounds(mock_randbelow):
    mock_randbelow.return_value = 0
    assert generate_otp() == "100000"
    mock_randbelow.return_value = 899999
    assert generate_otp() == "999999"
    mock_randbelow.assert_called_with(900000)


def test_distinct_code_skips_previous():
    codes = iter(["111111", "111111", "222222"])
    assert generate_distinct_otp("111111", lambda: next(codes)) == "222222"


def test_code_format():
    assert is_valid_code_format("012345") is True
    assert is_valid_code_format("12345") is False
    assert is_valid_code_format("1234567") is False
    assert is_valid_code_format("12a456") is False
    assert is_valid_code_format(123456) is False


def _otp(**overrides) -> ConsentOtp:
    generated = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    fields = dict(
        code="123456",
        method=OtpMethod.SMS.value,
        generated_at=generated,
        expires_at=generated + timedelta(minutes=15),
        attempts_count=0,
        max_attempts=3,
        is_verified=False,
        is_expired=False,
        is_blocked=False,
    )
    fields.update(overrides)
    return ConsentOtp(**fields)


NOW = datetime(2026, 3, 1, 9, 5, tzinfo=timezone.utc)
LATER = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_status_precedence():
    assert _otp().status_at(NOW) == OtpStatus.PENDING
    assert _otp(attempts_count=3).status_at(NOW) == OtpStatus.BLOCKED
    assert _otp(is_blocked=True).status_at(NOW) == OtpStatus.BLOCKED
    assert _otp(is_blocked=True).status_at(LATER) == OtpStatus.EXPIRED
    assert _otp(is_expired=True).status_at(NOW) == OtpStatus.EXPIRED
    assert _otp(is_verified=True, is_expired=True, is_blocked=True).status_at(LATER) == OtpStatus.VERIFIED


def test_naive_timestamps_are_treated_as_utc():
    otp = _otp(expires_at=datetime(2026, 3, 1, 9, 15))
    assert otp.status_at(NOW) == OtpStatus.PENDING
    assert otp.status_at(LATER) == OtpStatus.EXPIRED


def test_method_channels():
    assert OtpMethod.BOTH.uses_sms and OtpMethod.BOTH.uses_email
    assert OtpMethod.SMS.uses_sms and not OtpMethod.SMS.uses_email
    assert OtpMethod.EMAIL.uses_email and not OtpMethod.EMAIL.uses_sms
