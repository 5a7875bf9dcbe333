"""FastAPI dependency injection functions.

Admission-control components are process-wide singletons: created on first
use from Settings, alive for the process lifetime. reset_dependencies()
forgets them (used when settings or the database change, e.g. in tests).
"""
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from stylebook.auth import AdminAuthenticator, TokenService
from stylebook.cache import AuthorizationCache
from stylebook.client_ip import ClientIdentityResolver
from stylebook.clients import ClientDirectory
from stylebook.concurrency import ConcurrencyGate
from stylebook.config import get_settings
from stylebook.database import get_session_factory
from stylebook.logging_config import get_logger
from stylebook.rate_limiter import BackoffLimiter, SlidingWindowLimiter
from stylebook.scheduler import AppointmentScheduler

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_identity_resolver() -> ClientIdentityResolver:
    """Trusted CIDRs are parsed once; a bad entry fails here with ValueError."""
    return ClientIdentityResolver(get_settings().trusted_proxy_cidrs)


@lru_cache(maxsize=1)
def get_booking_limiter() -> SlidingWindowLimiter:
    settings = get_settings()
    return SlidingWindowLimiter(
        name="booking",
        max_per_minute=settings.booking_max_per_minute,
        max_per_hour=settings.booking_max_per_hour,
        max_keys=settings.limiter_max_keys,
        idle_seconds=settings.booking_idle_seconds,
        minute_message="Too many booking attempts. Try again in a minute.",
        hour_message="Too many booking attempts from your address. Try again later.",
    )


@lru_cache(maxsize=1)
def get_ai_limiter() -> SlidingWindowLimiter:
    settings = get_settings()
    return SlidingWindowLimiter(
        name="ai",
        max_per_minute=settings.ai_max_per_minute,
        max_per_hour=settings.ai_max_per_hour,
        max_keys=settings.limiter_max_keys,
        idle_seconds=settings.booking_idle_seconds,
        minute_message="Too many suggestion requests. Try again in a minute.",
        hour_message="Suggestion limit reached for your address. Try again later.",
    )


@lru_cache(maxsize=1)
def get_ai_gate() -> ConcurrencyGate:
    return ConcurrencyGate(permits=get_settings().ai_max_concurrent, name="ai")


@lru_cache(maxsize=1)
def get_login_backoff() -> BackoffLimiter:
    settings = get_settings()
    return BackoffLimiter(
        max_keys=settings.limiter_max_keys,
        stale_after_seconds=settings.backoff_idle_seconds,
    )


@lru_cache(maxsize=1)
def get_authorization_cache() -> AuthorizationCache:
    return AuthorizationCache(ttl_seconds=get_settings().admin_cache_ttl_seconds)


@lru_cache(maxsize=1)
def get_token_service() -> TokenService:
    settings = get_settings()
    if settings.uses_dev_secret:
        logger.warning("jwt_dev_secret_in_use", hint="Set JWT_SECRET outside development")
    return TokenService(settings.jwt_secret, settings.jwt_expiration_seconds)


@lru_cache(maxsize=1)
def get_scheduler() -> AppointmentScheduler:
    return AppointmentScheduler(get_session_factory())


@lru_cache(maxsize=1)
def get_client_directory() -> ClientDirectory:
    return ClientDirectory(get_session_factory())


@lru_cache(maxsize=1)
def get_authenticator() -> AdminAuthenticator:
    return AdminAuthenticator(
        session_factory=get_session_factory(),
        token_service=get_token_service(),
        backoff=get_login_backoff(),
        authorization_cache=get_authorization_cache(),
    )


_SINGLETONS = (
    get_identity_resolver,
    get_booking_limiter,
    get_ai_limiter,
    get_ai_gate,
    get_login_backoff,
    get_authorization_cache,
    get_token_service,
    get_scheduler,
    get_client_directory,
    get_authenticator,
)


def reset_dependencies():
    """Forget every singleton so the next request rebuilds it from current settings."""
    for factory in _SINGLETONS:
        factory.cache_clear()


def get_client_ip(request: Request, x_forwarded_for: Optional[str] = Header(None)) -> str:
    """
    Caller address for rate-limit keys.

    Only the socket peer and X-Forwarded-For are consulted; the header is
    honored only when the peer is a trusted proxy.
    """
    remote_addr = request.client.host if request.client else None
    return get_identity_resolver().resolve(remote_addr, x_forwarded_for)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def require_admin(authorization: Optional[str] = Header(None)) -> str:
    """
    FastAPI dependency guarding admin routes.

    Returns:
        Admin subject (lower-cased e-mail)

    Raises:
        HTTPException 401: Missing, invalid or expired token, or the account
                           is no longer an active admin
    """
    subject = get_authenticator().authorize(_bearer_token(authorization))
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return subject
