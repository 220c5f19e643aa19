import re
import secrets

OTP_LENGTH = 6
_OTP_PATTERN = re.compile(r"^\d{6}$")


def generate_otp() -> str:
    # uniform over 100000..999999
    return str(secrets.randbelow(900000) + 100000)


def generate_distinct_otp(previous: str, generator=generate_otp) -> str:
    """New code guaranteed to differ from `previous`."""
    code = generator()
    while code == previous:
        code = generator()
    return code


def is_valid_code_format(code) -> bool:
    return isinstance(code, str) and bool(_OTP_PATTERN.match(code))
