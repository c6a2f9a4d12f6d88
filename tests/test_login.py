"""
Tests for the credential store and the OTP-gated login flow
"""

import asyncio
from datetime import timedelta

import jwt
import pytest

from banking_sync.audit import AuditEventType
from banking_sync.authority import SyncAuthority
from banking_sync.credentials import CredentialStore, public_view
from banking_sync.errors import InvalidCredentials, Mismatch, NotFound, ValidationError
from banking_sync.login import LoginService
from banking_sync.otp import OTPAuthority


SECRET = "test-secret"


@pytest.fixture
def sync_authority(storage):
    return SyncAuthority(storage)


@pytest.fixture
def credentials(sync_authority):
    return CredentialStore(sync_authority)


@pytest.fixture
def otp_authority(notifier):
    return OTPAuthority(notifier)


@pytest.fixture
def login(credentials, otp_authority, audit_trail):
    return LoginService(credentials, otp_authority, jwt_secret=SECRET, audit_trail=audit_trail)


class TestCredentialStore:
    """Registry-backed account lookups"""

    def test_seeds_default_accounts(self, credentials, sync_authority):
        assert credentials.find("test@example.com")["id"] == "cust-001"
        assert len(sync_authority.get_registry()) == 4

    def test_find_is_case_insensitive(self, credentials):
        assert credentials.find("  Demo@Example.COM ")["id"] == "cust-002"
        assert credentials.find("nobody@example.com") is None

    def test_authenticate_strips_secret(self, credentials):
        account = credentials.authenticate("test@example.com", "test123 ")
        assert account["id"] == "cust-001"
        assert "password" not in account

    @pytest.mark.parametrize("email, password", [
        ("test@example.com", "wrong"),
        ("nobody@example.com", "test123"),
        ("test@example.com", ""),
    ])
    def test_authenticate_rejects(self, credentials, email, password):
        with pytest.raises(InvalidCredentials, match="Invalid email or password"):
            credentials.authenticate(email, password)

    def test_inactive_account_rejected(self, credentials, sync_authority):
        credentials.find("test@example.com")
        users = sync_authority.get_registry()
        users[1]["status"] = "suspended"
        sync_authority.replace_registry(users)

        with pytest.raises(InvalidCredentials):
            credentials.authenticate("test@example.com", "test123")

    def test_register(self, credentials, sync_authority):
        account = credentials.register("New@Bank.test", "secret1", "New Person", phone="+15550100")

        assert account["id"].startswith("user-")
        assert account["email"] == "new@bank.test"
        assert "password" not in account
        assert credentials.authenticate("new@bank.test", "secret1")["id"] == account["id"]
        assert sync_authority.get_profile("new@bank.test")["fullName"] == "New Person"

    @pytest.mark.parametrize("email, password, name", [
        ("no-at-sign", "secret1", "A"),
        ("a@bank.test", "short", "A"),
        ("a@bank.test", "secret1", " "),
        ("TEST@example.com", "secret1", "Dup"),
    ])
    def test_register_rejects(self, credentials, email, password, name):
        with pytest.raises(ValidationError):
            credentials.register(email, password, name)

    def test_update_password(self, credentials):
        credentials.update_password("test@example.com", "test123", "newpass1")
        assert credentials.authenticate("test@example.com", "newpass1")
        with pytest.raises(InvalidCredentials):
            credentials.authenticate("test@example.com", "test123")

    def test_update_password_needs_current(self, credentials):
        with pytest.raises(InvalidCredentials):
            credentials.update_password("test@example.com", "nope", "newpass1")

    def test_update_email(self, credentials):
        credentials.update_email("alice@example.com", "Alice@New.test")
        assert credentials.find("alice@new.test")["id"] == "cust-003"
        assert credentials.find("alice@example.com") is None

        with pytest.raises(ValidationError):
            credentials.update_email("test@example.com", "demo@example.com")

    def test_update_unknown_account(self, credentials):
        with pytest.raises(NotFound):
            credentials.update_email("nobody@example.com", "x@example.com")

    def test_otp_address_prefers_gmail(self, credentials):
        assert CredentialStore.otp_address(credentials.find("demo@example.com")) == "demo.user@example.net"
        assert CredentialStore.otp_address(credentials.find("test@example.com")) == "test@example.com"

    def test_public_view(self):
        assert public_view({"id": "1", "password": "x"}) == {"id": "1"}


class TestLoginService:
    """Password, then code, then tokens"""

    def test_full_login(self, login, otp_authority, audit_trail):
        challenge = asyncio.run(login.begin("Test@Example.com", "test123"))
        assert challenge.email == "test@example.com"
        assert challenge.otp_address == "test@example.com"
        assert challenge.expires_in == 600

        code = otp_authority.peek_code("test@example.com")
        session = login.complete("test@example.com", code)

        assert session.account["id"] == "cust-001"
        assert "password" not in session.account
        payload = jwt.decode(session.access_token, SECRET, algorithms=["HS256"])
        assert payload["sub"] == "cust-001"
        assert payload["type"] == "access"
        assert login.decode_token(session.refresh_token, expected_type="refresh")["email"] == "test@example.com"

        assert otp_authority.peek_code("test@example.com") is None
        assert len(audit_trail.get_events_by_type(AuditEventType.LOGIN_COMPLETED)) == 1

    def test_code_goes_to_gmail_address(self, login, otp_authority):
        challenge = asyncio.run(login.begin("demo@example.com", "demo123"))
        assert challenge.otp_address == "demo.user@example.net"

        code = otp_authority.peek_code("demo.user@example.net")
        assert login.complete("demo@example.com", code).account["id"] == "cust-002"

    def test_bad_password_issues_no_code(self, login, otp_authority, audit_trail):
        with pytest.raises(InvalidCredentials):
            asyncio.run(login.begin("test@example.com", "wrong"))
        assert len(otp_authority) == 0
        assert audit_trail.get_events_by_type(AuditEventType.LOGIN_FAILED)[0].metadata["stage"] == "password"

    def test_wrong_code(self, login):
        asyncio.run(login.begin("test@example.com", "test123"))
        with pytest.raises(Mismatch) as excinfo:
            login.complete("test@example.com", "000000")
        assert excinfo.value.remaining_attempts == 4

    def test_code_cannot_be_replayed(self, login, otp_authority):
        asyncio.run(login.begin("test@example.com", "test123"))
        code = otp_authority.peek_code("test@example.com")
        login.complete("test@example.com", code)

        with pytest.raises(NotFound):
            login.complete("test@example.com", code)

    def test_unknown_account(self, login):
        with pytest.raises(InvalidCredentials):
            login.complete("nobody@example.com", "123456")


class TestTokens:

    def _session(self, login, otp_authority):
        asyncio.run(login.begin("test@example.com", "test123"))
        return login.complete("test@example.com", otp_authority.peek_code("test@example.com"))

    def test_current_account(self, login, otp_authority):
        session = self._session(login, otp_authority)
        assert login.current_account(session.access_token)["email"] == "test@example.com"

    def test_refresh_token_is_not_an_access_token(self, login, otp_authority):
        session = self._session(login, otp_authority)
        with pytest.raises(InvalidCredentials):
            login.current_account(session.refresh_token)

    def test_foreign_signature(self, login, otp_authority):
        session = self._session(login, otp_authority)
        forged = jwt.encode(
            jwt.decode(session.access_token, SECRET, algorithms=["HS256"]), "other-secret", algorithm="HS256"
        )
        with pytest.raises(InvalidCredentials, match="Invalid token"):
            login.decode_token(forged)

    def test_expired_token(self, credentials, otp_authority):
        login = LoginService(
            credentials, otp_authority, jwt_secret=SECRET, access_token_ttl=timedelta(seconds=-1)
        )
        session = self._session(login, otp_authority)
        with pytest.raises(InvalidCredentials, match="Token expired"):
            login.decode_token(session.access_token)

    def test_token_for_removed_account(self, login, otp_authority, sync_authority):
        session = self._session(login, otp_authority)
        sync_authority.replace_registry([u for u in sync_authority.get_registry() if u["id"] != "cust-001"])
        with pytest.raises(InvalidCredentials):
            login.current_account(session.access_token)
