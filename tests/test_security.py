import time

import jwt
import pytest
from fastapi import HTTPException

from authguard.core.config import PasswordRequirementsConfig, settings
from authguard.core.security import (
    create_access_token,
    create_link_token,
    decode_access_token,
    decode_identity_assertion,
    decode_link_token,
    hash_password,
    validate_password_strength,
    verify_password,
)


def test_password_hash_roundtrip():
    hashed = hash_password("Str0ng!Pass")
    assert verify_password("Str0ng!Pass", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("Str0ng!Pass", None)


def test_password_strength():
    requirements = PasswordRequirementsConfig()
    assert validate_password_strength("Str0ng!Pass", requirements) == []

    problems = validate_password_strength("weak", requirements)
    assert "Password must be at least 8 characters" in problems
    assert "Password must contain an uppercase letter" in problems
    assert "Password must contain a number" in problems
    assert "Password must contain a symbol" in problems

    relaxed = PasswordRequirementsConfig(require_symbols=False, require_uppercase=False)
    assert validate_password_strength("lower1234", relaxed) == []


def test_access_token_claims():
    token = create_access_token({"id": "u1", "email": "a@example.com", "sid": "s1"})
    claims = decode_access_token(token)
    assert claims["id"] == "u1"
    assert claims["sid"] == "s1"


def test_tampered_access_token_is_rejected():
    token = create_access_token({"id": "u1"})
    with pytest.raises(HTTPException) as exc:
        decode_access_token(token[:-2] + "xx")
    assert exc.value.status_code == 401


def test_link_token_roundtrip():
    token = create_link_token("u1", "recovery")
    claims = decode_link_token(token, "recovery", max_age_minutes=60)
    assert claims["user_id"] == "u1"
    assert claims["purpose"] == "recovery"


def test_link_tokens_get_distinct_ids():
    first = decode_link_token(create_link_token("u1", "recovery"), "recovery", max_age_minutes=60)
    second = decode_link_token(create_link_token("u1", "recovery"), "recovery", max_age_minutes=60)
    assert first["jti"] != second["jti"]


def test_link_token_is_bound_to_purpose():
    token = create_link_token("u1", "recovery")
    with pytest.raises(ValueError):
        decode_link_token(token, "email_confirmation", max_age_minutes=60)


def test_link_token_expires(monkeypatch):
    token = create_link_token("u1", "email_confirmation")
    later = time.time() + 61 * 60
    monkeypatch.setattr(time, "time", lambda: later)
    with pytest.raises(ValueError):
        decode_link_token(token, "email_confirmation", max_age_minutes=60)


def test_garbage_link_token():
    with pytest.raises(ValueError):
        decode_link_token("not-a-token", "recovery", max_age_minutes=60)


def test_unknown_link_purpose():
    with pytest.raises(ValueError):
        create_link_token("u1", "something")


def test_identity_assertion():
    assertion = jwt.encode(
        {"provider": "google", "provider_id": "123", "email": "a@example.com"},
        settings.IDENTITY_ASSERTION_SECRET,
        algorithm="HS256",
    )
    assert decode_identity_assertion(assertion)["provider"] == "google"

    missing = jwt.encode({"provider": "google"}, settings.IDENTITY_ASSERTION_SECRET, algorithm="HS256")
    with pytest.raises(ValueError):
        decode_identity_assertion(missing)

    forged = jwt.encode({"provider": "google", "provider_id": "1", "email": "x@y.z"}, "other", algorithm="HS256")
    with pytest.raises(ValueError):
        decode_identity_assertion(forged)
