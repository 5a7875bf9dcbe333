"""Test admin login, tokens and the admin capability check."""
import jwt
import pytest

from stylebook.auth import ADMIN_ROLE, AdminAuthenticator, TokenService
from stylebook.cache import AuthorizationCache
from stylebook.errors import InvalidCredentials, RateLimitExceeded
from stylebook.models import AdminUser
from stylebook.rate_limiter import BackoffLimiter

SECRET = "unit-test-secret-0123456789abcdef0123"
IP = "198.51.100.10"


@pytest.fixture
def tokens():
    return TokenService(SECRET, expiration_seconds=3600)


@pytest.fixture
def authenticator(session_factory, tokens, clock):
    """Authenticator with fake-clock backoff and cache, plus one admin account."""
    auth = AdminAuthenticator(
        session_factory=session_factory,
        token_service=tokens,
        backoff=BackoffLimiter(clock=clock),
        authorization_cache=AuthorizationCache(ttl_seconds=180, clock=clock),
    )
    auth.ensure_admin("Admin@Stylebook.local", "correct-horse")
    return auth


def set_active(session_factory, email: str, active: bool):
    with session_factory() as db:
        user = db.query(AdminUser).filter(AdminUser.email == email).one()
        user.active = active
        db.commit()


class TestTokenService:
    """Test bearer token issue/verify."""

    def test_issue_and_decode(self, tokens):
        token = tokens.issue("  Admin@Stylebook.local ", ADMIN_ROLE)

        claims = tokens.decode(token)

        assert claims.subject == "admin@stylebook.local"
        assert claims.role == ADMIN_ROLE

    def test_wrong_secret_is_rejected(self, tokens):
        token = TokenService("another-secret-0123456789abcdef0123").issue("admin@stylebook.local", ADMIN_ROLE)

        assert tokens.decode(token) is None

    def test_expired_token_is_rejected(self):
        expired = TokenService(SECRET, expiration_seconds=-10)

        assert expired.decode(expired.issue("admin@stylebook.local", ADMIN_ROLE)) is None

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt", "a.b.c"])
    def test_garbage_is_rejected(self, tokens, token):
        assert tokens.decode(token) is None

    def test_token_without_role_is_rejected(self, tokens):
        token = jwt.encode({"sub": "admin@stylebook.local"}, SECRET, algorithm="HS256")

        assert tokens.decode(token) is None

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenService("")


class TestLogin:
    """Test password login with lockout."""

    def test_login_returns_token_for_admin(self, authenticator, tokens):
        token = authenticator.login("ADMIN@stylebook.local ", "correct-horse", IP)

        assert tokens.decode(token).subject == "admin@stylebook.local"

    def test_wrong_password_records_failure(self, authenticator):
        with pytest.raises(InvalidCredentials):
            authenticator.login("admin@stylebook.local", "wrong", IP)

        assert authenticator.backoff.state_for(ip=IP).failure_count == 1
        assert authenticator.backoff.state_for(email_key="admin@stylebook.local").failure_count == 1

    def test_unknown_email_is_indistinguishable(self, authenticator):
        with pytest.raises(InvalidCredentials) as unknown:
            authenticator.login("nobody@stylebook.local", "correct-horse", IP)

        assert unknown.value.message == "Invalid email or password"

    def test_lockout_blocks_even_correct_password(self, authenticator, clock):
        with pytest.raises(InvalidCredentials):
            authenticator.login("admin@stylebook.local", "wrong", IP)

        with pytest.raises(RateLimitExceeded):
            authenticator.login("admin@stylebook.local", "correct-horse", IP)

        clock.advance(2)
        assert authenticator.login("admin@stylebook.local", "correct-horse", IP)

    def test_success_clears_backoff(self, authenticator, clock):
        with pytest.raises(InvalidCredentials):
            authenticator.login("admin@stylebook.local", "wrong", IP)
        clock.advance(2)

        authenticator.login("admin@stylebook.local", "correct-horse", IP)

        assert authenticator.backoff.state_for(ip=IP) is None
        assert authenticator.backoff.state_for(email_key="admin@stylebook.local") is None

    def test_inactive_admin_cannot_login(self, authenticator, session_factory):
        set_active(session_factory, "admin@stylebook.local", False)

        with pytest.raises(InvalidCredentials):
            authenticator.login("admin@stylebook.local", "correct-horse", IP)


class TestAuthorize:
    """Test bearer token to admin subject resolution."""

    def test_valid_token_authorizes(self, authenticator, tokens):
        token = tokens.issue("admin@stylebook.local", ADMIN_ROLE)

        assert authenticator.authorize(token) == "admin@stylebook.local"

    def test_non_admin_role_is_refused(self, authenticator, tokens):
        assert authenticator.authorize(tokens.issue("admin@stylebook.local", "CLIENT")) is None

    def test_missing_token_is_refused(self, authenticator):
        assert authenticator.authorize(None) is None

    def test_deactivation_takes_effect_after_cache_ttl(self, authenticator, tokens, session_factory, clock):
        token = tokens.issue("admin@stylebook.local", ADMIN_ROLE)
        assert authenticator.authorize(token) == "admin@stylebook.local"

        set_active(session_factory, "admin@stylebook.local", False)

        clock.advance(179)
        assert authenticator.authorize(token) == "admin@stylebook.local"
        clock.advance(2)
        assert authenticator.authorize(token) is None

    def test_unknown_subject_is_refused(self, authenticator, tokens):
        assert authenticator.authorize(tokens.issue("ghost@stylebook.local", ADMIN_ROLE)) is None


class TestEnsureAdmin:

    def test_bootstrap_is_idempotent(self, authenticator):
        assert authenticator.ensure_admin("admin@stylebook.local", "other-password") is False
        assert authenticator.ensure_admin("second@stylebook.local", "pw-123456") is True

    def test_bootstrap_requires_credentials(self, authenticator):
        with pytest.raises(ValueError):
            authenticator.ensure_admin("", "pw")

    def test_password_is_hashed(self, session_factory, authenticator):
        with session_factory() as db:
            user = db.query(AdminUser).filter(AdminUser.email == "admin@stylebook.local").one()

        assert user.password_hash != "correct-horse"
        assert AdminUser.verify_password("correct-horse", user.password_hash)
        assert not AdminUser.verify_password("correct-horse", "not-a-bcrypt-hash")
