"""
Integration tests for passwords, profiles, API keys and administration.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from panelauth.database.models import (
    APIKey, AuditLog, PasswordResetRequest, User, UserSession, UserStatus,
)
from panelauth.security.crypto import verify_password
from panelauth.security.errors import (
    AccountInactiveError,
    APIKeyExpiredError,
    APIKeyNotFoundError,
    InvalidInputError,
    InvalidPasswordError,
    InvalidResetTokenError,
    PasswordRecentlyUsedError,
    PasswordTooShortError,
    ResetTokenExpiredError,
    RoleNotFoundError,
    SessionNotFoundError,
    StateConflictError,
    UserAlreadyExistsError,
    UserNotFoundError,
)

STRONG_PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w-Secure-Pass"


class TestRegistration:
    """Test cases for creating accounts."""

    def test_register_sets_defaults(self, auth_service, alice, clock):
        assert alice.role == "user"
        assert alice.status == UserStatus.ACTIVE.value
        assert alice.display_name == "alice"
        assert alice.last_password_change == clock.now
        assert alice.password_expires_at is None
        assert alice.password_history == [alice.password_hash]
        assert verify_password(STRONG_PASSWORD, alice.password_hash)

    @pytest.mark.parametrize("username,email", [
        ("alice", "other@example.com"),
        ("other", "alice@example.com"),
    ])
    def test_duplicate_username_or_email(self, auth_service, alice, username, email):
        with pytest.raises(UserAlreadyExistsError):
            auth_service.register(username, email, STRONG_PASSWORD)

    def test_weak_password_rejected(self, auth_service, db_session):
        with pytest.raises(PasswordTooShortError):
            auth_service.register("bob", "bob@example.com", "Ab1")

        assert db_session.query(User).count() == 0

    @pytest.mark.parametrize("username,email", [
        ("erin", "not-an-email"),
        ("er", "erin@example.com"),
        ("erin@example.com", "mallory@example.org"),
        ("erin smith", "erin@example.com"),
    ])
    def test_malformed_input_rejected(self, auth_service, db_session, username, email):
        with pytest.raises(InvalidInputError) as exc_info:
            auth_service.register(username, email, STRONG_PASSWORD)

        assert exc_info.value.code == "invalid_input"
        assert exc_info.value.details["errors"]
        assert db_session.query(User).count() == 0

    def test_username_taken_as_email_elsewhere(self, auth_service, db_session):
        db_session.add(User(username="legacy", email="bob", password_hash="x"))
        db_session.commit()

        with pytest.raises(UserAlreadyExistsError):
            auth_service.register("bob", "bob@example.com", STRONG_PASSWORD)


class TestPasswordChange:
    """Test cases for changing a password."""

    def test_change_password(self, auth_service, alice):
        auth_service.change_password(alice.id, STRONG_PASSWORD, NEW_PASSWORD)

        assert verify_password(NEW_PASSWORD, alice.password_hash)
        assert len(alice.password_history) == 2
        auth_service.login("alice", NEW_PASSWORD)

    def test_wrong_current_password(self, auth_service, alice):
        with pytest.raises(InvalidPasswordError):
            auth_service.change_password(alice.id, "wrong-password", NEW_PASSWORD)

    def test_reuse_is_rejected(self, auth_service, alice):
        auth_service.change_password(alice.id, STRONG_PASSWORD, NEW_PASSWORD)

        with pytest.raises(PasswordRecentlyUsedError):
            auth_service.change_password(alice.id, NEW_PASSWORD, STRONG_PASSWORD)

    def test_admin_reset_clears_lock(self, auth_service, alice):
        for _ in range(5):
            with pytest.raises(InvalidPasswordError):
                auth_service.login("alice", "wrong-password")

        auth_service.admin_reset_password(alice.id, NEW_PASSWORD, actor_id="admin-1")

        assert alice.status == UserStatus.ACTIVE.value
        assert alice.failed_login_attempts == 0
        auth_service.login("alice", NEW_PASSWORD)


class TestPasswordReset:
    """Test cases for the emailed reset flow."""

    def test_unknown_email_returns_none(self, auth_service, db_session):
        assert auth_service.request_password_reset("nobody@example.com") is None
        assert db_session.query(PasswordResetRequest).count() == 0

    def test_reset_flow_revokes_sessions(self, auth_service, alice, db_session):
        login = auth_service.login("alice", STRONG_PASSWORD)
        token = auth_service.request_password_reset("alice@example.com", "10.0.0.1")

        auth_service.reset_password(token, NEW_PASSWORD)

        auth_service.login("alice", NEW_PASSWORD)
        with pytest.raises(SessionNotFoundError):
            auth_service.validate_token(login.access_token)
        assert db_session.query(PasswordResetRequest).one().used_at is not None

    def test_token_is_single_use(self, auth_service, alice):
        token = auth_service.request_password_reset("alice@example.com")
        auth_service.reset_password(token, NEW_PASSWORD)

        with pytest.raises(InvalidResetTokenError):
            auth_service.reset_password(token, "An0ther-Pass!")

    def test_new_request_replaces_pending(self, auth_service, alice):
        first = auth_service.request_password_reset("alice@example.com")
        second = auth_service.request_password_reset("alice@example.com")

        with pytest.raises(InvalidResetTokenError):
            auth_service.reset_password(first, NEW_PASSWORD)
        auth_service.reset_password(second, NEW_PASSWORD)

    def test_expired_token(self, auth_service, alice, clock):
        token = auth_service.request_password_reset("alice@example.com")
        clock.advance(minutes=61)

        with pytest.raises(ResetTokenExpiredError):
            auth_service.reset_password(token, NEW_PASSWORD)

    def test_unknown_token(self, auth_service):
        with pytest.raises(InvalidResetTokenError):
            auth_service.reset_password("nope", NEW_PASSWORD)

    def test_reset_unlocks_but_keeps_suspension(self, auth_service, alice, db_session):
        alice.status = UserStatus.SUSPENDED.value
        db_session.commit()
        token = auth_service.request_password_reset("alice@example.com")

        auth_service.reset_password(token, NEW_PASSWORD)

        assert alice.status == UserStatus.SUSPENDED.value


class TestProfile:
    """Test cases for self-service profile edits."""

    def test_update_profile(self, auth_service, alice, db_session):
        alice.email_verified = True
        db_session.commit()

        auth_service.update_profile(
            alice.id, display_name="Alice A.", email="alice@new.example.com",
            preferences={"theme": "dark"},
        )

        assert alice.display_name == "Alice A."
        assert alice.email == "alice@new.example.com"
        assert alice.email_verified is False
        assert alice.preferences == {"theme": "dark"}

    def test_email_taken(self, auth_service, alice, make_user):
        make_user("bob")

        with pytest.raises(UserAlreadyExistsError):
            auth_service.update_profile(alice.id, email="bob@example.com")

    def test_malformed_email(self, auth_service, alice):
        with pytest.raises(InvalidInputError):
            auth_service.update_profile(alice.id, email="nope")

        assert alice.email == "alice@example.com"


class TestAPIKeys:
    """Test cases for API key issuance and validation."""

    def test_create_and_validate(self, auth_service, alice, db_session):
        created = auth_service.create_api_key(alice.id, "ci", permissions=["sites:read"])

        assert created.key.startswith(created.key_prefix)
        stored = db_session.get(APIKey, created.id)
        assert stored.key_hash != created.key

        context = auth_service.validate_api_key(created.key, "10.0.0.5")
        assert context.auth_method == "api_key"
        assert context.api_key_id == created.id
        assert context.permissions == ["sites:read"]
        assert context.rate_limit == 1000
        assert stored.last_used_ip == "10.0.0.5"

    def test_key_cannot_exceed_owner(self, auth_service, alice):
        created = auth_service.create_api_key(alice.id, "greedy", permissions=["sites:read", "users:delete"])

        assert auth_service.validate_api_key(created.key).permissions == ["sites:read"]

    def test_key_without_permissions_inherits_owner(self, auth_service, alice):
        created = auth_service.create_api_key(alice.id, "plain")

        assert auth_service.validate_api_key(created.key).permissions == [
            "files:read", "monitor:read", "sites:read",
        ]

    def test_unknown_key(self, auth_service, alice):
        created = auth_service.create_api_key(alice.id, "ci")

        with pytest.raises(APIKeyNotFoundError):
            auth_service.validate_api_key(created.key[:-1] + ("A" if created.key[-1] != "A" else "B"))
        with pytest.raises(APIKeyNotFoundError):
            auth_service.validate_api_key("short")

    def test_keys_sharing_a_prefix(self, auth_service, alice):
        generated = [("samepref" + "A" * 35, "samepref"), ("samepref" + "B" * 35, "samepref")]
        with patch("panelauth.security.authentication.generate_api_key", side_effect=generated):
            first = auth_service.create_api_key(alice.id, "first")
            second = auth_service.create_api_key(alice.id, "second")

        assert first.key_prefix == second.key_prefix == "samepref"
        assert auth_service.validate_api_key(first.key).api_key_id == first.id
        assert auth_service.validate_api_key(second.key).api_key_id == second.id

    def test_blank_name_rejected(self, auth_service, alice, db_session):
        with pytest.raises(InvalidInputError):
            auth_service.create_api_key(alice.id, "")

        assert db_session.query(APIKey).count() == 0

    def test_expired_key(self, auth_service, alice, clock):
        created = auth_service.create_api_key(alice.id, "ci", expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)

        with pytest.raises(APIKeyExpiredError):
            auth_service.validate_api_key(created.key)

    def test_inactive_owner(self, auth_service, alice, db_session):
        created = auth_service.create_api_key(alice.id, "ci")
        alice.status = UserStatus.INACTIVE.value
        db_session.commit()

        with pytest.raises(AccountInactiveError):
            auth_service.validate_api_key(created.key)

    def test_list_and_delete(self, auth_service, alice, make_user):
        created = auth_service.create_api_key(alice.id, "ci")
        bob = make_user("bob")

        listed = auth_service.list_api_keys(alice.id)
        assert [k.id for k in listed] == [created.id]
        assert not hasattr(listed[0], "key")

        with pytest.raises(APIKeyNotFoundError):
            auth_service.delete_api_key(bob.id, created.id)

        auth_service.delete_api_key(alice.id, created.id)
        with pytest.raises(APIKeyNotFoundError):
            auth_service.validate_api_key(created.key)


class TestAdministration:
    """Test cases for administrator operations."""

    @pytest.fixture
    def root(self, make_user):
        return make_user("root", role="admin")

    def test_admin_create_user_checks_role(self, auth_service, root):
        user = auth_service.admin_create_user(root.id, "carol", "carol@example.com", STRONG_PASSWORD, role="operator")
        assert user.role == "operator"

        with pytest.raises(RoleNotFoundError):
            auth_service.admin_create_user(root.id, "dan", "dan@example.com", STRONG_PASSWORD, role="ghost")

    def test_list_users(self, auth_service, make_user):
        make_user("alpha")
        make_user("beta", role="operator")
        make_user("gamma", role="operator")

        users, total = auth_service.list_users(role="operator")
        assert total == 2
        assert {u.username for u in users} == {"beta", "gamma"}

        users, total = auth_service.list_users(search="alp")
        assert [u.username for u in users] == ["alpha"]

        users, total = auth_service.list_users(page=2, page_size=2)
        assert total == 3
        assert len(users) == 1

    def test_list_users_search_is_literal(self, auth_service, make_user):
        make_user("a_b")
        make_user("axb")

        users, _ = auth_service.list_users(search="a_b")
        assert [u.username for u in users] == ["a_b"]

        users, total = auth_service.list_users(search="%")
        assert total == 0

    def test_admin_update_unknown_status(self, auth_service, root, alice):
        with pytest.raises(InvalidInputError):
            auth_service.admin_update_user(root.id, alice.id, {"status": "banished"})

        assert alice.status == UserStatus.ACTIVE.value

    def test_admin_update_user(self, auth_service, root, alice, db_session):
        auth_service.admin_update_user(root.id, alice.id, {
            "display_name": "Alice Admin-Edited",
            "role": "operator",
            "permissions": ["docker:*"],
            "password_hash": "ignored",
        })

        assert alice.display_name == "Alice Admin-Edited"
        assert alice.role == "operator"
        assert alice.permissions == ["docker:*"]
        assert verify_password(STRONG_PASSWORD, alice.password_hash)
        assert db_session.query(AuditLog).filter_by(action="user_update").count() == 1

    def test_suspension_revokes_sessions(self, auth_service, root, alice, db_session):
        login = auth_service.login("alice", STRONG_PASSWORD)

        auth_service.admin_update_user(root.id, alice.id, {"status": "suspended"})

        assert db_session.query(UserSession).filter_by(user_id=alice.id, is_active=True).count() == 0
        with pytest.raises(SessionNotFoundError):
            auth_service.validate_token(login.access_token)

    def test_admin_update_unknown_role(self, auth_service, root, alice):
        with pytest.raises(RoleNotFoundError):
            auth_service.admin_update_user(root.id, alice.id, {"role": "ghost"})

    def test_admin_token_context(self, auth_service, root):
        result = auth_service.login("root", STRONG_PASSWORD)

        context = auth_service.validate_token(result.access_token)
        assert context.is_admin is True
        assert context.has_permission("users:delete")

    def test_admin_cannot_delete_self(self, auth_service, root):
        with pytest.raises(StateConflictError):
            auth_service.admin_delete_user(root.id, root.id)

    def test_delete_cascades(self, auth_service, root, alice, db_session):
        auth_service.login("alice", STRONG_PASSWORD)
        auth_service.create_api_key(alice.id, "ci")
        auth_service.request_password_reset("alice@example.com")

        auth_service.admin_delete_user(root.id, alice.id)

        assert db_session.query(UserSession).count() == 0
        assert db_session.query(APIKey).count() == 0
        assert db_session.query(PasswordResetRequest).count() == 0
        with pytest.raises(UserNotFoundError):
            auth_service.get_user(alice.id)

    def test_unlock_user(self, auth_service, alice):
        for _ in range(5):
            with pytest.raises(InvalidPasswordError):
                auth_service.login("alice", "wrong-password")

        auth_service.unlock_user(alice.id, actor_id="admin-1")

        assert alice.status == UserStatus.ACTIVE.value
        assert alice.locked_until is None
        auth_service.login("alice", STRONG_PASSWORD)

    def test_audit_queries_available(self, auth_service, alice):
        auth_service.login("alice", STRONG_PASSWORD)

        logs, total = auth_service.audit.get_audit_logs(user_id=alice.id, action="login")
        assert total == 1
        assert auth_service.audit.get_login_attempts(username="alice")[0].success is True
