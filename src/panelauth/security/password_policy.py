"""
PanelAuth Password Policy
Composable password rules with history enforcement.
"""

import re
import unicodedata
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from panelauth.core.config import Settings, get_settings
from .crypto import verify_password
from .errors import (
    PasswordContainsUserInfoError,
    PasswordMissingDigitError,
    PasswordMissingLowercaseError,
    PasswordMissingSpecialError,
    PasswordMissingUppercaseError,
    PasswordRecentlyUsedError,
    PasswordTooCommonError,
    PasswordTooLongError,
    PasswordTooShortError,
    PolicyViolationError,
)

COMMON_PASSWORDS = frozenset({
    "password", "123456", "12345678", "qwerty", "abc123", "monkey", "1234567",
    "letmein", "trustno1", "dragon", "baseball", "iloveyou", "master", "sunshine",
    "ashley", "bailey", "shadow", "123123", "654321", "superman", "qazwsx",
    "michael", "football", "password1", "password123", "welcome", "welcome1",
    "admin", "admin123", "root", "toor", "pass", "test", "guest", "changeme",
    "111111", "000000", "1234567890", "password!", "passw0rd",
})

COMMON_PATTERNS = (
    # Ascending digit runs
    re.compile(r"^(012|123|234|345|456|567|678|789|890)+$"),
    # Ascending letter runs
    re.compile(
        r"^(abc|bcd|cde|def|efg|fgh|ghi|hij|ijk|jkl|klm|lmn|mno|nop|opq"
        r"|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz)+$"
    ),
    # Keyboard rows
    re.compile(r"^(qwerty|asdf|zxcv)+"),
)


def is_special_char(char: str) -> bool:
    """Punctuation or symbol, in the Unicode sense"""
    return unicodedata.category(char)[0] in ("P", "S")


def is_common_password(password: str) -> bool:
    lower = password.lower()
    if lower in COMMON_PASSWORDS:
        return True
    if lower and lower == lower[0] * len(lower):
        return True
    return any(pattern.match(lower) for pattern in COMMON_PATTERNS)


@dataclass
class PasswordPolicy:
    """Password rules; every rule can be toggled independently"""

    min_length: int = 8
    max_length: int = 128
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = False
    prevent_common: bool = True
    prevent_user_info: bool = True
    history_count: int = 5
    max_age_days: int = 0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PasswordPolicy":
        settings = settings or get_settings()
        return cls(
            min_length=settings.PASSWORD_MIN_LENGTH,
            max_length=settings.PASSWORD_MAX_LENGTH,
            require_uppercase=settings.PASSWORD_REQUIRE_UPPERCASE,
            require_lowercase=settings.PASSWORD_REQUIRE_LOWERCASE,
            require_digit=settings.PASSWORD_REQUIRE_DIGIT,
            require_special=settings.PASSWORD_REQUIRE_SPECIAL,
            prevent_common=settings.PASSWORD_PREVENT_COMMON,
            prevent_user_info=settings.PASSWORD_PREVENT_USER_INFO,
            history_count=settings.PASSWORD_HISTORY_COUNT,
            max_age_days=settings.PASSWORD_MAX_AGE_DAYS,
        )

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    def validate(
        self,
        password: str,
        username: str = "",
        email: str = "",
        history: Sequence[str] = (),
    ) -> None:
        """
        Validate a candidate password.

        Raises the first failing rule, in a fixed order: length, character
        classes, common passwords, user info, history.
        """
        violations = self.violations(password, username, email, history, stop_at_first=True)
        if violations:
            raise violations[0]

    def violations(
        self,
        password: str,
        username: str = "",
        email: str = "",
        history: Sequence[str] = (),
        stop_at_first: bool = False,
    ) -> List[PolicyViolationError]:
        """Collect every rule the password breaks"""
        found: List[PolicyViolationError] = []

        def add(error: PolicyViolationError) -> bool:
            found.append(error)
            return stop_at_first

        if len(password) < self.min_length:
            if add(PasswordTooShortError(
                f"Password must be at least {self.min_length} characters", min_length=self.min_length
            )):
                return found
        if len(password) > self.max_length:
            if add(PasswordTooLongError(
                f"Password must be at most {self.max_length} characters", max_length=self.max_length
            )):
                return found

        has_upper = has_lower = has_digit = has_special = False
        for char in password:
            if char.isupper():
                has_upper = True
            elif char.islower():
                has_lower = True
            elif char.isdigit():
                has_digit = True
            elif is_special_char(char):
                has_special = True

        class_checks = (
            (self.require_uppercase, has_upper, PasswordMissingUppercaseError),
            (self.require_lowercase, has_lower, PasswordMissingLowercaseError),
            (self.require_digit, has_digit, PasswordMissingDigitError),
            (self.require_special, has_special, PasswordMissingSpecialError),
        )
        for required, present, error_cls in class_checks:
            if required and not present:
                if add(error_cls()):
                    return found

        if self.prevent_common and is_common_password(password):
            if add(PasswordTooCommonError()):
                return found

        if self.prevent_user_info and self._contains_user_info(password, username, email):
            if add(PasswordContainsUserInfoError()):
                return found

        if self.history_count > 0 and history:
            for previous in list(history)[:self.history_count]:
                if verify_password(password, previous):
                    add(PasswordRecentlyUsedError(history_count=self.history_count))
                    break

        return found

    @staticmethod
    def _contains_user_info(password: str, username: str, email: str) -> bool:
        lower = password.lower()
        if username and username.lower() in lower:
            return True
        if email:
            local_part = email.split("@", 1)[0].lower()
            if local_part and local_part in lower:
                return True
        return False

    def password_expiry(self, now: datetime) -> Optional[datetime]:
        if self.max_age_days > 0:
            return now + timedelta(days=self.max_age_days)
        return None

    def push_history(self, history: Sequence[str], new_hash: str) -> List[str]:
        """Most-recent-first history, bounded by the history depth"""
        depth = max(self.history_count, 1)
        return [new_hash, *history][:depth]
