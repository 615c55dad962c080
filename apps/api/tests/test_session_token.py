import time

import pytest
from jose import jwt

from config import settings
from services.session_token import create_session_token, decode_session_token


def _encode(claims):
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_session_token_round_trip():
    issued = create_session_token("user-42", email="user42@example.com")

    payload = decode_session_token(issued["token"])

    assert payload["sub"] == "user-42"
    assert payload["email"] == "user42@example.com"
    assert payload["aud"] == "authenticated"
    assert issued["expires_at"] > int(time.time())


def test_wrong_audience_is_rejected():
    now = int(time.time())
    token = _encode({"sub": "user-1", "aud": "anon", "role": "authenticated", "iat": now, "exp": now + 60})

    with pytest.raises(ValueError, match="Invalid or expired"):
        decode_session_token(token)


def test_anonymous_role_is_rejected():
    now = int(time.time())
    token = _encode({"sub": "user-1", "aud": "authenticated", "role": "anon", "iat": now, "exp": now + 60})

    with pytest.raises(ValueError, match="not an authenticated user token"):
        decode_session_token(token)


def test_expired_token_is_rejected():
    now = int(time.time())
    token = _encode({"sub": "user-1", "aud": "authenticated", "role": "authenticated", "iat": now - 120, "exp": now - 60})

    with pytest.raises(ValueError):
        decode_session_token(token)


def test_token_signed_with_other_secret_is_rejected():
    now = int(time.time())
    token = jwt.encode(
        {"sub": "user-1", "aud": "authenticated", "role": "authenticated", "exp": now + 60},
        "a-different-secret",
        algorithm="HS256",
    )

    with pytest.raises(ValueError):
        decode_session_token(token)
