"""
B2B Session Authentication
==========================

Resolves the caller of a bulk-order endpoint to a B2BIdentity.

Session token format: ``<payload>.<signature>``
    - payload: base64url(JSON) with user_id, account_id, role, permissions,
      account_type, optional custom limits and ``exp`` (unix seconds)
    - signature: base64url(HMAC-SHA256(session secret, payload))

Tokens are sent as ``Authorization: Bearer <token>``. Verified tokens are
cached in a TTL cache; expiry is re-checked on every cache hit.

Session secret auto-generation: if BULKORDER_SESSION_SECRET is not set,
generate one, persist it to <data_directory>/.bulkorder_session_secret,
and log WARNING.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from cachetools import TTLCache
from fastapi import Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from bulkorder.config import settings
from bulkorder.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


class B2BRole(str, Enum):
    BUYER = "buyer"
    PURCHASING_MANAGER = "purchasing_manager"
    ACCOUNT_ADMIN = "account_admin"
    API_USER = "api_user"


class Permission(str, Enum):
    BULK_ORDER_CREATE = "bulk_order.create"
    BULK_ORDER_VIEW = "bulk_order.view"
    BULK_ORDER_APPROVE = "bulk_order.approve"
    BULK_ORDER_UNLIMITED = "bulk_order.unlimited"
    ACCOUNT_VIEW = "account.view"
    ACCOUNT_MANAGE = "account.manage"
    API_ACCESS = "api.access"


class OrderLimits(BaseModel):
    daily_value: float
    monthly_value: float
    single_order_value: float
    single_order_items: int


class B2BIdentity(BaseModel):
    """Authenticated caller, as carried by the session token."""

    user_id: str
    account_id: str
    role: B2BRole = B2BRole.BUYER
    permissions: List[str] = Field(default_factory=list)
    account_type: str = "b2b"
    custom_limits: Optional[OrderLimits] = None
    exp: Optional[int] = None

    @property
    def is_b2b(self) -> bool:
        return self.account_type == "b2b"


# In-memory cache for verified session tokens
session_cache: TTLCache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)


def _is_auth_enabled() -> bool:
    """Check if auth is enabled.

    Auth can only be disabled when BOTH conditions are met:
      1. settings.debug is True
      2. ENVIRONMENT is 'development'
    """
    env_value = os.environ.get("BULKORDER_AUTH_ENABLED", "").lower()
    if env_value in ("true", "1", "yes"):
        return True
    if env_value in ("false", "0", "no"):
        environment = os.environ.get("ENVIRONMENT", "production").lower()
        if settings.debug and environment == "development":
            logger.warning(
                "AUTH DISABLED: BULKORDER_AUTH_ENABLED=false with debug=True and ENVIRONMENT=development. "
                "Do NOT use this in production."
            )
            return False
        logger.warning(
            "Ignoring BULKORDER_AUTH_ENABLED=false because debug=%s and ENVIRONMENT=%s. "
            "Auth disable requires debug=True AND ENVIRONMENT=development.",
            settings.debug,
            environment,
        )
        return True
    return settings.auth_enabled


# ---------------------------------------------------------------------------
# Session secret management
# ---------------------------------------------------------------------------

def _secret_file() -> Path:
    return Path(settings.data_directory) / ".bulkorder_session_secret"


def _get_session_secret() -> str:
    """Return the HMAC secret for session tokens.

    Priority:
        1. BULKORDER_SESSION_SECRET env var / settings
        2. Persisted file under the data directory
        3. Auto-generate, persist, and log WARNING
    """
    if settings.session_secret:
        return settings.session_secret

    secret_file = _secret_file()
    if secret_file.exists():
        stored = secret_file.read_text().strip()
        if stored:
            settings.session_secret = stored
            logger.info("Loaded session secret from %s", secret_file)
            return stored

    generated = secrets.token_hex(32)
    try:
        secret_file.parent.mkdir(parents=True, exist_ok=True)
        secret_file.write_text(generated)
        secret_file.chmod(0o600)
    except OSError as exc:
        logger.warning("Could not persist session secret to %s: %s", secret_file, exc)

    settings.session_secret = generated
    logger.warning(
        "BULKORDER_SESSION_SECRET not set, auto-generated and persisted to %s. "
        "Set BULKORDER_SESSION_SECRET in production for stability across restarts.",
        secret_file,
    )
    return generated


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(payload: str) -> str:
    key = _get_session_secret().encode()
    return _b64encode(hmac.new(key, payload.encode("ascii"), hashlib.sha256).digest())


# ---------------------------------------------------------------------------
# Token issue / verify
# ---------------------------------------------------------------------------

def issue_session_token(identity: B2BIdentity, ttl_s: int = 3600) -> str:
    """Mint a signed session token for *identity* (used by the login service and tests)."""
    claims = identity.model_dump(mode="json", exclude_none=True)
    claims["exp"] = int(time.time()) + ttl_s
    payload = _b64encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode())
    return f"{payload}.{_sign(payload)}"


def verify_session_token(token: str) -> B2BIdentity:
    """Verify signature and expiry. Raises AuthenticationError("BLK-AUTH-009")."""
    cached = session_cache.get(token)
    if cached is not None:
        if cached.exp is not None and cached.exp <= time.time():
            session_cache.pop(token, None)
            raise AuthenticationError("BLK-AUTH-009", detail="session expired")
        return cached

    payload, sep, signature = token.partition(".")
    if not sep or not payload or not signature:
        raise AuthenticationError("BLK-AUTH-009", detail="malformed session token")

    if not hmac.compare_digest(_sign(payload), signature):
        raise AuthenticationError("BLK-AUTH-009", detail="bad session signature")

    try:
        identity = B2BIdentity.model_validate_json(_b64decode(payload))
    except (ValueError, PydanticValidationError) as exc:
        raise AuthenticationError("BLK-AUTH-009", detail=f"invalid session payload: {exc}")

    if identity.exp is not None and identity.exp <= time.time():
        raise AuthenticationError("BLK-AUTH-009", detail="session expired")

    session_cache[token] = identity
    return identity


# ---------------------------------------------------------------------------
# Request resolution
# ---------------------------------------------------------------------------

_DEV_IDENTITY = B2BIdentity(
    user_id="dev_user_auth_disabled",
    account_id="dev_account",
    role=B2BRole.PURCHASING_MANAGER,
    account_type="b2b",
)


async def resolve_identity(request: Request) -> Tuple[Optional[B2BIdentity], Optional[AuthenticationError]]:
    """Resolve the caller without raising.

    Returns (identity, None) on success or (None, error) when credentials
    are missing or invalid. The ingress guard decides how to reject.
    """
    if not _is_auth_enabled():
        request.state.identity = _DEV_IDENTITY
        return _DEV_IDENTITY, None

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None, AuthenticationError("BLK-AUTH-001", detail="missing bearer token")

    try:
        identity = verify_session_token(token.strip())
    except AuthenticationError as exc:
        logger.warning("Session token rejected: %s", exc.detail)
        return None, exc

    request.state.identity = identity
    return identity, None


async def get_current_identity(request: Request) -> B2BIdentity:
    """FastAPI dependency for read/rollback endpoints. Raises on failure."""
    identity, error = await resolve_identity(request)
    if error is not None:
        raise error
    return identity
