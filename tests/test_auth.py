import time

import pytest

from async_notify_service.auth import (
    AuthenticationError,
    TokenVerifier,
    extract_bearer_token,
    resolve_identity,
)
from async_notify_service.models import Identity

SECRET = "auth-test-secret-0123456789abcdefghij"


def test_id_style_claim_wins_over_subject():
    assert resolve_identity({"userId": "1", "sub": "2", "username": "alice"}) == Identity("1", "alice")
    assert resolve_identity({"user_id": 3, "sub": "2"}) == Identity("3", None)
    assert resolve_identity({"sub": "2", "name": "Bob"}) == Identity("2", "Bob")
    assert resolve_identity({"userId": "", "sub": "2"}).user_id == "2"


def test_identity_requires_a_user_claim():
    with pytest.raises(AuthenticationError) as exc:
        resolve_identity({"username": "alice"})
    assert exc.value.code == "missing_user_id"


def test_extract_bearer_token():
    assert extract_bearer_token("abc", "Bearer xyz") == "abc"
    assert extract_bearer_token(None, "Bearer xyz") == "xyz"
    assert extract_bearer_token("", "bearer  xyz ") == "xyz"
    assert extract_bearer_token(None, "raw-token") == "raw-token"
    assert extract_bearer_token(None, "Bearer ") is None
    assert extract_bearer_token(None, None) is None


def test_extract_bearer_token_without_credential():
    assert extract_bearer_token(None, "Bearer") is None
    assert extract_bearer_token(None, "  BEARER   ") is None
    assert extract_bearer_token("   ", "bearer") is None


def test_verify_round_trip_and_rejections():
    verifier = TokenVerifier(SECRET)
    token = verifier.issue({"userId": "42", "username": "alice"})
    assert verifier.verify(token) == Identity("42", "alice")

    with pytest.raises(AuthenticationError):
        verifier.verify("")
    with pytest.raises(AuthenticationError):
        verifier.verify("garbage")

    expired = verifier.issue({"userId": "42", "exp": int(time.time()) - 60})
    with pytest.raises(AuthenticationError) as exc:
        verifier.verify(expired)
    assert exc.value.code == "invalid_token"


def test_verifier_requires_secret():
    with pytest.raises(ValueError):
        TokenVerifier("")
