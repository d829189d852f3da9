from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from jose import jwt

from shipcredits import main


def _token(secret=None, **claims) -> str:
    payload = {"exp": datetime.now(timezone.utc) + timedelta(minutes=5), **claims}
    return jwt.encode(payload, secret or main.JWT_SECRET_KEY, algorithm=main.JWT_ALGORITHM)


def test_session_token_resolves_current_user():
    user = main.get_current_user(session_token=_token(sub="42", email="ops@example.com"))

    assert user.id == "42"
    assert user.email == "ops@example.com"


@pytest.mark.parametrize(
    "token",
    [
        None,
        "not-a-jwt",
        _token(secret="other-secret", sub="42"),
        _token(email="ops@example.com"),
    ],
)
def test_invalid_session_is_unauthorized(token):
    with pytest.raises(HTTPException) as excinfo:
        main.get_current_user(session_token=token)

    assert excinfo.value.status_code == 401


def test_expired_session_token_is_rejected():
    expired = jwt.encode(
        {"sub": "42", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        main.JWT_SECRET_KEY,
        algorithm=main.JWT_ALGORITHM,
    )

    assert main.resolve_user_from_session_token(expired) is None
