"""
PanelAuth TOTP / MFA Engine
Time-based one-time passwords (RFC 6238) and single-use recovery codes.
"""

import base64
import binascii
import io
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote, quote_plus

import pyotp
import qrcode

from panelauth.core.logging import get_logger
from .crypto import constant_time_equals

logger = get_logger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30  # seconds
TOTP_SKEW = 1  # steps accepted on either side of the current one

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_BYTES = 5


@dataclass
class MFASetup:
    """Everything a user needs to enroll an authenticator app"""
    secret: str
    uri: str
    qr_code: str = ""
    recovery_codes: List[str] = field(default_factory=list)


def generate_secret() -> str:
    """Random 160-bit base32 secret"""
    return pyotp.random_base32(length=32)


def generate_uri(secret: str, issuer: str, account: str) -> str:
    """otpauth:// provisioning URI with percent-encoded label and issuer"""
    return (
        f"otpauth://totp/{quote(issuer, safe='')}:{quote(account, safe='')}"
        f"?secret={secret}&issuer={quote_plus(issuer)}"
        f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
    )


def normalize_secret(secret: str) -> str:
    return "".join(secret.split()).upper().rstrip("=")


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(normalize_secret(secret), digits=TOTP_DIGITS, interval=TOTP_PERIOD)


def generate_code(secret: str, now: Optional[datetime] = None) -> str:
    """Current code for a secret, mainly for provisioning checks and tests"""
    totp = _totp(secret)
    return totp.at(now) if now is not None else totp.now()


def validate_code(secret: str, code: str, now: Optional[datetime] = None) -> bool:
    """
    Validate a TOTP code.

    Accepts the current 30 second step and one step on either side, which
    tolerates roughly 30 seconds of clock skew between server and device.
    """
    if not secret or not code:
        return False
    code = code.strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False

    try:
        return _totp(secret).verify(code, for_time=now, valid_window=TOTP_SKEW)
    except (binascii.Error, ValueError):
        logger.warning("TOTP validation attempted with an undecodable secret")
        return False


def _normalize_recovery_code(code: str) -> str:
    return "".join(code.split()).upper()


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> List[str]:
    """High-entropy codes formatted as XXXXX-XXXXX"""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(RECOVERY_CODE_BYTES).upper()
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


def consume_recovery_code(code: str, codes: Sequence[str]) -> Tuple[List[str], bool]:
    """
    Match and remove a recovery code.

    Returns a new list without the matched code; the input is never mutated,
    so the caller must persist the returned list.
    """
    candidate = _normalize_recovery_code(code or "")
    if not candidate:
        return list(codes), False

    for index, stored in enumerate(codes):
        if constant_time_equals(candidate, _normalize_recovery_code(stored)):
            return list(codes[:index]) + list(codes[index + 1:]), True

    return list(codes), False


def generate_qr_code(uri: str, box_size: int = 10, border: int = 4) -> str:
    """Render a provisioning URI as a PNG data URI"""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=border,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")

    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


def generate_mfa_setup(
    issuer: str,
    account: str,
    recovery_code_count: int = RECOVERY_CODE_COUNT,
    with_qr_code: bool = True,
) -> MFASetup:
    secret = generate_secret()
    uri = generate_uri(secret, issuer, account)
    return MFASetup(
        secret=secret,
        uri=uri,
        qr_code=generate_qr_code(uri) if with_qr_code else "",
        recovery_codes=generate_recovery_codes(recovery_code_count),
    )
