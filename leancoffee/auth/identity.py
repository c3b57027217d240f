import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, WebSocket, status
from jose import JWTError, jwt

from leancoffee.config.loader import get_auth_settings

# Dedicated logger for identity resolution events
logger = logging.getLogger("identity")

DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)


def generate_dev_key() -> str:
    """Generate a throwaway signing key for development environments ONLY."""
    key = secrets.token_urlsafe(48)
    logger.warning(
        "\n"
        + "*" * 80
        + "\n"
        + "DEVELOPMENT MODE: Using generated identity verification key.\n"
        + "Tokens issued by the identity provider will NOT verify.\n"
        + "Set LEANCOFFEE_JWT_SECRET_KEY in your environment variables for production.\n"
        + "*" * 80
    )
    return key


def validate_secret_key(key: str) -> bool:
    if not key:
        return False
    if len(key) < 32:
        logger.error("JWT secret key must be at least 32 characters long for security.")
        return False
    return True


def _is_production_mode() -> bool:
    env = os.getenv("LEANCOFFEE_ENV", "development").strip().lower()
    return env in {"production", "prod"}


_AUTH_SETTINGS = get_auth_settings()
SECRET_KEY = os.getenv("LEANCOFFEE_JWT_SECRET_KEY")
ALGORITHM = _AUTH_SETTINGS["algorithm"]
JWT_ISSUER = _AUTH_SETTINGS["issuer"]
VERIFY_ISSUER = _AUTH_SETTINGS["verify_issuer"]

if not SECRET_KEY:
    if _is_production_mode():
        raise RuntimeError(
            "Missing LEANCOFFEE_JWT_SECRET_KEY while LEANCOFFEE_ENV is set to production. "
            + "Configure the identity provider's signing secret before startup."
        )
    SECRET_KEY = generate_dev_key()
elif not validate_secret_key(SECRET_KEY):
    raise RuntimeError(
        "Invalid JWT secret key configuration. "
        + "The key must be at least 32 characters long. "
        + "Update LEANCOFFEE_JWT_SECRET_KEY in your environment variables."
    )
else:
    logger.info("JWT verification key loaded from environment.")


@dataclass(frozen=True)
class Identity:
    """Caller resolved from a verified bearer token."""

    user_id: str
    display_name: Optional[str] = None


def create_access_token(
    user_id: str,
    *,
    display_name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Mint a token shaped like the identity provider's.

    Used by tests and local development; production tokens come from the
    external provider.
    """
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": now,
        "exp": now + (expires_delta or DEFAULT_TOKEN_LIFETIME),
        "iss": JWT_ISSUER,
    }
    if display_name:
        claims["name"] = display_name
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_identity(token: Optional[str]) -> Optional[Identity]:
    """Verify ``token`` and return its identity, or None when it is missing or invalid."""
    if not token:
        return None
    options = {"verify_aud": False, "verify_iss": VERIFY_ISSUER}
    try:
        payload = jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            issuer=JWT_ISSUER if VERIFY_ISSUER else None,
            options=options,
        )
    except JWTError as exc:
        logger.warning("Rejected bearer token: %s", exc)
        return None
    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Rejected bearer token: 'sub' claim missing.")
        return None
    name = payload.get("name")
    return Identity(user_id=str(user_id), display_name=str(name) if name else None)


def _strip_bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if value.lower().startswith("bearer "):
        value = value.split(" ", 1)[1].strip()
    return value or None


def extract_token(
    headers: Any, cookies: Dict[str, str], query_params: Any = None
) -> Optional[str]:
    """Find the bearer token in the Authorization header, the cookie or the query."""
    token = _strip_bearer(headers.get("authorization"))
    if token:
        return token
    token = _strip_bearer(cookies.get("access_token"))
    if token:
        return token
    if query_params is not None:
        return _strip_bearer(query_params.get("token"))
    return None


async def get_current_identity(request: Request) -> Identity:
    """
    FastAPI dependency resolving the caller.

    Raises a 401 when no valid token is presented.
    """
    identity = decode_identity(extract_token(request.headers, request.cookies))
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials. Invalid or expired token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    logger.debug("Resolved identity %s for %s", identity.user_id, request.url.path)
    return identity


def resolve_websocket_identity(websocket: WebSocket) -> Optional[Identity]:
    return decode_identity(
        extract_token(websocket.headers, websocket.cookies, websocket.query_params)
    )
