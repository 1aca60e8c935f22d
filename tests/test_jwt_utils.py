"""
Tests for admin token creation and validation.
"""

from datetime import timedelta

import jwt

from src.account_guard.utils import (
    JWT_ALGORITHM,
    create_access_token,
    decode_access_token,
    get_token_expiration,
)
from src.account_guard.utils.jwt_utils import JWT_SECRET_KEY


def test_round_trip_carries_subject_and_issuer():
    payload = decode_access_token(create_access_token("admin-root", role="ops"))

    assert payload["sub"] == "admin-root"
    assert payload["iss"] == "account-guard"
    assert payload["role"] == "ops"
    assert payload["jti"]


def test_expired_token_is_rejected():
    token = create_access_token("admin-root", expires_delta=timedelta(seconds=-1))

    assert decode_access_token(token) is None
    assert get_token_expiration(token) is not None


def test_foreign_issuer_is_rejected():
    token = jwt.encode(
        {"sub": "admin-root", "iss": "someone-else", "exp": 9999999999, "iat": 1700000000},
        JWT_SECRET_KEY,
        algorithm=JWT_ALGORITHM,
    )

    assert decode_access_token(token) is None


def test_wrong_signature_is_rejected():
    token = jwt.encode(
        {"sub": "admin-root", "iss": "account-guard", "exp": 9999999999, "iat": 1700000000},
        "another-secret-that-is-long-enough-for-hs256",
        algorithm=JWT_ALGORITHM,
    )

    assert decode_access_token(token) is None


def test_garbage_has_no_expiration():
    assert get_token_expiration("garbage") is None
