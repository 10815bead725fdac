"""
Integration tests for MFA enrollment and MFA-protected login.
"""
import pytest

from panelauth.database.models import AuditLog, LoginAttempt, UserSession
from panelauth.security import mfa
from panelauth.security.errors import (
    InvalidMFACodeError,
    InvalidPasswordError,
    MFAAlreadyEnabledError,
    MFANotEnabledError,
    MFASetupRequiredError,
)

STRONG_PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture
def enrolled(auth_service, alice, clock):
    """alice with MFA enabled; returns the recovery codes"""
    setup = auth_service.setup_mfa(alice.id, with_qr_code=False)
    return auth_service.enable_mfa(alice.id, mfa.generate_code(setup.secret, clock.now))


class TestMFAEnrollment:
    """Test cases for setup and enable."""

    def test_setup_does_not_enable(self, auth_service, alice):
        setup = auth_service.setup_mfa(alice.id)

        assert setup.qr_code.startswith("data:image/png;base64,")
        assert setup.uri.startswith("otpauth://totp/VPanel:alice?")
        assert alice.mfa_secret == setup.secret
        assert alice.mfa_enabled is False
        assert auth_service.login("alice", STRONG_PASSWORD).mfa_required is False

    def test_enable_requires_setup(self, auth_service, alice):
        with pytest.raises(MFASetupRequiredError):
            auth_service.enable_mfa(alice.id, "123456")

    def test_enable_with_wrong_code(self, auth_service, alice):
        auth_service.setup_mfa(alice.id, with_qr_code=False)

        with pytest.raises(InvalidMFACodeError):
            auth_service.enable_mfa(alice.id, "abcdef")
        assert alice.mfa_enabled is False

    def test_enable_returns_recovery_codes(self, enrolled, alice, db_session):
        assert len(enrolled) == 10
        assert alice.mfa_enabled is True
        assert alice.mfa_recovery_codes == enrolled
        assert db_session.query(AuditLog).filter_by(action="mfa_enable").count() == 1

    def test_setup_twice_is_rejected_once_enabled(self, auth_service, alice, enrolled):
        with pytest.raises(MFAAlreadyEnabledError):
            auth_service.setup_mfa(alice.id)


class TestMFALogin:
    """Test cases for the second factor during login."""

    def test_missing_code_requests_mfa(self, auth_service, enrolled, db_session):
        result = auth_service.login("alice", STRONG_PASSWORD)

        assert result.mfa_required is True
        assert result.access_token is None
        assert result.refresh_token is None
        assert db_session.query(UserSession).count() == 0
        assert db_session.query(LoginAttempt).count() == 0

    def test_valid_code(self, auth_service, alice, enrolled, clock):
        code = mfa.generate_code(alice.mfa_secret, clock.now)

        result = auth_service.login("alice", STRONG_PASSWORD, mfa_code=code)

        assert result.mfa_required is False
        assert result.access_token

    def test_invalid_code(self, auth_service, enrolled, db_session):
        with pytest.raises(InvalidMFACodeError):
            auth_service.login("alice", STRONG_PASSWORD, mfa_code="000000x")

        attempt = db_session.query(LoginAttempt).one()
        assert attempt.reason == "invalid_mfa_code"

    def test_recovery_code_is_single_use(self, auth_service, alice, enrolled):
        code = enrolled[0]

        auth_service.login("alice", STRONG_PASSWORD, mfa_code=code)
        assert code not in alice.mfa_recovery_codes
        assert len(alice.mfa_recovery_codes) == 9

        with pytest.raises(InvalidMFACodeError):
            auth_service.login("alice", STRONG_PASSWORD, mfa_code=code)

    def test_password_checked_before_mfa(self, auth_service, enrolled):
        with pytest.raises(InvalidPasswordError):
            auth_service.login("alice", "wrong-password")


class TestMFAManagement:
    """Test cases for disabling, regenerating and admin operations."""

    def test_disable_requires_password(self, auth_service, alice, enrolled):
        with pytest.raises(InvalidPasswordError):
            auth_service.disable_mfa(alice.id, "wrong-password")

        auth_service.disable_mfa(alice.id, STRONG_PASSWORD)

        assert alice.mfa_enabled is False
        assert alice.mfa_secret is None
        assert alice.mfa_recovery_codes == []
        assert auth_service.login("alice", STRONG_PASSWORD).mfa_required is False

    def test_disable_when_not_enabled(self, auth_service, alice):
        with pytest.raises(MFANotEnabledError):
            auth_service.disable_mfa(alice.id, STRONG_PASSWORD)

    def test_regenerate_recovery_codes(self, auth_service, alice, enrolled):
        codes = auth_service.regenerate_recovery_codes(alice.id, STRONG_PASSWORD)

        assert len(codes) == 10
        assert set(codes).isdisjoint(enrolled)
        with pytest.raises(InvalidMFACodeError):
            auth_service.login("alice", STRONG_PASSWORD, mfa_code=enrolled[0])

    def test_admin_enable_and_disable(self, auth_service, alice, clock):
        setup = auth_service.admin_enable_mfa(alice.id, actor_id="admin-1")

        assert alice.mfa_enabled is True
        assert len(setup.recovery_codes) == 10
        code = mfa.generate_code(setup.secret, clock.now)
        assert auth_service.login("alice", STRONG_PASSWORD, mfa_code=code).access_token

        auth_service.admin_disable_mfa(alice.id, actor_id="admin-1")
        assert alice.mfa_enabled is False

    def test_admin_reset_requires_reenrollment(self, auth_service, alice, enrolled, clock):
        old_secret = alice.mfa_secret

        setup = auth_service.admin_reset_mfa(alice.id, actor_id="admin-1")

        assert alice.mfa_enabled is False
        assert alice.mfa_secret == setup.secret != old_secret
        auth_service.enable_mfa(alice.id, mfa.generate_code(setup.secret, clock.now))
        assert alice.mfa_enabled is True
