"""Admin authentication: password login, bearer tokens and capability checks."""
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Optional

import jwt
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from stylebook.cache import AuthorizationCache
from stylebook.errors import InvalidCredentials
from stylebook.logging_config import get_logger
from stylebook.models import AdminUser
from stylebook.rate_limiter import BackoffLimiter, normalize_email_key

logger = get_logger(__name__)

ALGORITHM = "HS256"
ADMIN_ROLE = "ADMIN"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str


class TokenService:
    """
    Signs and verifies admin bearer tokens (HS256).

    The subject is always the trimmed, lower-cased e-mail, which is also the
    key AuthorizationCache uses.
    """

    def __init__(self, secret: str, expiration_seconds: int = 28800):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self.secret = secret
        self.expiration_seconds = expiration_seconds

    def issue(self, subject: str, role: str) -> str:
        now = datetime.now(UTC)
        payload = {
            "sub": normalize_email(subject),
            "role": role,
            "iat": now,
            "exp": now + timedelta(seconds=self.expiration_seconds),
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def decode(self, token: Optional[str]) -> Optional[TokenClaims]:
        """
        Verify signature and expiry.

        Returns:
            Claims, or None for any invalid, expired or incomplete token
        """
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret, algorithms=[ALGORITHM])
        except jwt.PyJWTError as e:
            logger.info("token_rejected", reason=type(e).__name__)
            return None

        subject = payload.get("sub")
        role = payload.get("role")
        if not isinstance(subject, str) or not isinstance(role, str):
            return None
        return TokenClaims(subject=normalize_email(subject), role=role)


class AdminAuthenticator:
    """
    Login with lockout, and the "is this token an active admin" decision.

    Pattern: Backoff check before any credential work; every mismatch (unknown
    e-mail, wrong password, inactive account) is recorded as one failure and
    reported with the same message.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        token_service: TokenService,
        backoff: BackoffLimiter,
        authorization_cache: AuthorizationCache,
    ):
        self.SessionLocal = session_factory
        self.tokens = token_service
        self.backoff = backoff
        self.authorization_cache = authorization_cache

    def _find_admin(self, db, email: str) -> Optional[AdminUser]:
        return db.scalars(
            select(AdminUser).where(func.lower(AdminUser.email) == email)
        ).first()

    def login(self, email: str, password: str, client_ip: Optional[str]) -> str:
        """
        Exchange credentials for a bearer token.

        Args:
            email: Admin e-mail (case and surrounding spaces ignored)
            password: Plain-text password
            client_ip: Resolved caller address used as a lockout key

        Returns:
            Signed token

        Raises:
            RateLimitExceeded: If IP or e-mail is locked out
            InvalidCredentials: On any credential mismatch
        """
        email_key = normalize_email_key(email)
        self.backoff.check_allowed(client_ip, email_key)

        with self.SessionLocal() as db:
            user = self._find_admin(db, normalize_email(email))
            valid = (
                user is not None
                and bool(user.active)
                and user.role.upper() == ADMIN_ROLE
                and AdminUser.verify_password(password or "", user.password_hash)
            )

        if not valid:
            self.backoff.record_failure(client_ip, email_key)
            raise InvalidCredentials(INVALID_CREDENTIALS_MESSAGE)

        self.backoff.record_success(client_ip, email_key)
        logger.info("admin_login_succeeded", subject=user.email)
        return self.tokens.issue(user.email, ADMIN_ROLE)

    def is_active_admin(self, subject: str) -> bool:
        """Source-of-truth lookup behind the authorization cache."""
        with self.SessionLocal() as db:
            user = self._find_admin(db, normalize_email(subject))
            return user is not None and bool(user.active) and user.role.upper() == ADMIN_ROLE

    def authorize(self, token: Optional[str]) -> Optional[str]:
        """
        Resolve a bearer token to an admin subject.

        Returns:
            Subject e-mail if the token is valid, carries the ADMIN role and
            the account is still an active admin; otherwise None
        """
        claims = self.tokens.decode(token)
        if claims is None or claims.role.upper() != ADMIN_ROLE:
            return None
        allowed = self.authorization_cache.is_allowed(
            claims.subject,
            lambda: self.is_active_admin(claims.subject),
        )
        return claims.subject if allowed else None

    def ensure_admin(self, email: str, password: str) -> bool:
        """
        Create an active admin account unless the e-mail already exists.

        Returns:
            True if an account was created
        """
        email = normalize_email(email)
        if not email or not password:
            raise ValueError("Admin e-mail and password are required")

        with self.SessionLocal() as db:
            if self._find_admin(db, email) is not None:
                return False
            db.add(AdminUser(
                email=email,
                password_hash=AdminUser.hash_password(password),
                role=ADMIN_ROLE,
                active=True,
            ))
            db.commit()

        logger.info("admin_bootstrapped", subject=email)
        return True
