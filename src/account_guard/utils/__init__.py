"""
Account Guard utilities package.
"""

from .jwt_utils import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    JWT_ALGORITHM,
    JWT_ISSUER,
    create_access_token,
    decode_access_token,
    generate_secret_key,
    get_token_expiration,
)

__all__ = [
    "create_access_token",
    "decode_access_token",
    "get_token_expiration",
    "generate_secret_key",
    "JWT_ALGORITHM",
    "JWT_ISSUER",
    "ACCESS_TOKEN_EXPIRE_MINUTES",
]
