"""
JWT utilities for administrator bearer tokens.

Tokens are HS256-signed with JWT_SECRET_KEY; the ``sub`` claim is the
administrator's account subject.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from loguru import logger

from src import config

# Load from env.properties via config module (environment variables take precedence)
INSECURE_DEFAULT_SECRET = "INSECURE_DEFAULT_CHANGE_IN_PRODUCTION"
JWT_SECRET_KEY = config.get("JWT_SECRET_KEY") or INSECURE_DEFAULT_SECRET
JWT_ALGORITHM = "HS256"
JWT_ISSUER = "account-guard"
ACCESS_TOKEN_EXPIRE_MINUTES = config.get_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60)

# Enforce secure secret in production
if config.ENVIRONMENT == "production" and JWT_SECRET_KEY == INSECURE_DEFAULT_SECRET:
    raise ValueError(
        "CRITICAL SECURITY ERROR: JWT_SECRET_KEY must be set to a secure value in production. "
        "Generate one with: python -c 'import secrets; print(secrets.token_hex(32))'"
    )


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None, **claims: Any) -> str:
    """
    Create a signed access token for an administrator.

    Args:
        subject: Account subject placed in the ``sub`` claim
        expires_delta: Lifetime; defaults to ACCESS_TOKEN_EXPIRE_MINUTES
        **claims: Extra claims to embed

    Returns:
        Encoded JWT
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = dict(claims)
    to_encode.update({"sub": subject, "exp": expire, "iat": now, "iss": JWT_ISSUER})
    # Unique per token so each one maps to its own session
    to_encode.setdefault("jti", secrets.token_urlsafe(16))

    logger.debug(f"Created access token for subject: {subject}, expires: {expire}")
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Validate signature, expiry and issuer.

    Returns:
        The claims, or None if the token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            issuer=JWT_ISSUER,
            options={"require": ["exp", "iat", "sub", "iss"]},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
    return None


def get_token_expiration(token: str) -> Optional[datetime]:
    """Expiry of a token without verifying it, or None if unreadable."""
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        logger.debug(f"Could not extract expiration from token: {e}")
        return None
    exp_timestamp = payload.get("exp")
    return datetime.fromtimestamp(exp_timestamp, tz=timezone.utc) if exp_timestamp else None


def generate_secret_key() -> str:
    """Random 256-bit key, hex encoded, for JWT_SECRET_KEY."""
    return secrets.token_hex(32)


if JWT_SECRET_KEY == INSECURE_DEFAULT_SECRET:
    logger.warning(
        "Using default JWT_SECRET_KEY; admin tokens are forgeable. "
        "Set JWT_SECRET_KEY in the environment or env.properties."
    )
