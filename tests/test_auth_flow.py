"""
Sign-in flows: device session setup, device verification and 2FA login.
"""
import jwt

from authguard.core.config import settings
from authguard.core.security import create_link_token
from authguard.services import email_service
from authguard.utils.device_utils import fingerprint_from_user_agent
from conftest import DEVICE_CODE, TOTP_CODE, auth_headers

PASSWORD = "Str0ng!Pass"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def bearer(body):
    return {"Authorization": f"Bearer {body['access_token']}"}


# ===========================
#           SIGNUP
# ===========================
def test_signup_trusts_first_device(client, services):
    res = client.post("/api/v1/auth/signup", json={"email": "bob@example.com", "password": PASSWORD})

    assert res.status_code == 200
    body = res.json()
    assert body["needsVerification"] is False
    assert body["requiresTwoFactor"] is False

    session = services.sessions.sessions[body["deviceSessionId"]]
    assert session["confidence_score"] == 100
    assert session["is_trusted"] is True
    assert res.cookies.get("device_session_id") == body["deviceSessionId"]

    types = services.events.types(body["user_id"])
    assert {"NEW_DEVICE_LOGIN", "DEVICE_TRUSTED_AUTO", "ACCOUNT_CREATED"} <= set(types)
    assert services.codes.device_codes == {}


def test_signup_rejects_weak_password(client, services):
    res = client.post("/api/v1/auth/signup", json={"email": "bob@example.com", "password": "weak"})
    assert res.status_code == 400
    assert services.provider.users == {}


def test_signup_duplicate_email(client, make_user):
    make_user(email="bob@example.com")
    res = client.post("/api/v1/auth/signup", json={"email": "bob@example.com", "password": PASSWORD})
    assert res.status_code == 400


# ===========================
#            LOGIN
# ===========================
def test_login_wrong_password(client, make_user):
    make_user()
    res = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert res.status_code == 401


def test_login_from_unknown_device_requires_device_code(client, services, make_user):
    user = make_user()

    res = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD},
                      headers={"User-Agent": CHROME_MAC})
    body = res.json()

    assert body["needsVerification"] is True
    session_id = body["deviceSessionId"]
    assert services.sessions.sessions[session_id]["confidence_score"] == 0
    assert services.codes.device_codes[(user["id"], session_id)] == DEVICE_CODE

    # Protected routes stay closed until the device is verified
    blocked = client.get("/api/v1/device-sessions", headers=bearer(body))
    assert blocked.status_code == 403

    wrong = client.post("/api/v1/auth/verify-device", json={"code": "000000"}, headers=bearer(body))
    assert wrong.status_code == 400

    ok = client.post("/api/v1/auth/verify-device", json={"code": DEVICE_CODE}, headers=bearer(body))
    assert ok.status_code == 200
    assert services.sessions.sessions[session_id]["needs_verification"] is False
    assert "DEVICE_VERIFIED" in services.events.types(user["id"])

    assert client.get("/api/v1/device-sessions", headers=bearer(body)).status_code == 200


def test_login_from_known_device_is_trusted(client, services, make_user):
    user = make_user()
    known = fingerprint_from_user_agent(CHROME_MAC, "testclient").model_dump()
    services.sessions.add_session(user["id"], device=known)

    res = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD},
                      headers={"User-Agent": CHROME_MAC})
    body = res.json()

    assert body["needsVerification"] is False
    session = services.sessions.sessions[body["deviceSessionId"]]
    assert session["confidence_score"] == 85
    assert session["is_trusted"] is True


def test_login_with_two_factor(client, services, make_user):
    user = make_user()
    factor = services.provider.add_verified_factor(user["id"])

    res = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
    body = res.json()

    # 2FA replaces the emailed device code
    assert body["needsVerification"] is False
    assert body["requiresTwoFactor"] is True
    assert body["factorId"] == factor["id"]
    assert body["availableMethods"] == [{"type": "authenticator", "factorId": factor["id"]}]
    assert services.codes.device_codes == {}

    blocked = client.get("/api/v1/device-sessions", headers=bearer(body))
    assert blocked.status_code == 403
    assert blocked.json()["detail"] == "Two-factor verification required"

    verified = client.post("/api/v1/auth/verify", headers=bearer(body),
                           json={"method": "authenticator", "code": TOTP_CODE, "factorId": factor["id"]})
    assert verified.status_code == 200
    assert services.sessions.sessions[body["deviceSessionId"]]["aal"] == "aal2"

    assert client.get("/api/v1/device-sessions", headers=bearer(body)).status_code == 200


def test_resend_device_code_for_verified_device(client, services, make_user):
    user = make_user()
    sid = services.sessions.add_session(user["id"])
    res = client.post("/api/v1/auth/verify-device/send-code", headers=auth_headers(user, sid))
    assert res.status_code == 400


# ===========================
#           OAUTH
# ===========================
def _assertion(**claims):
    return jwt.encode(claims, settings.IDENTITY_ASSERTION_SECRET, algorithm="HS256")


def test_oauth_first_sign_in_creates_account(client, services):
    assertion = _assertion(provider="google", provider_id="g-42", email="carol@example.com")

    res = client.post("/api/v1/auth/oauth/callback", json={"assertion": assertion})
    body = res.json()

    assert body["needsVerification"] is False
    assert services.sessions.sessions[body["deviceSessionId"]]["confidence_score"] == 100
    assert "ACCOUNT_CREATED" in services.events.types(body["user_id"])


def test_oauth_returning_user_gets_oauth_trust(client, services, make_user):
    user = make_user()
    user["identities"].append({"provider": "google", "provider_id": "g-1"})

    res = client.post("/api/v1/auth/oauth/callback",
                      json={"assertion": _assertion(provider="google", provider_id="g-1", email=user["email"])})
    body = res.json()

    assert body["user_id"] == user["id"]
    assert services.sessions.sessions[body["deviceSessionId"]]["confidence_score"] == 85


def test_oauth_bad_assertion(client):
    res = client.post("/api/v1/auth/oauth/callback", json={"assertion": "garbage"})
    assert res.status_code == 401


# ===========================
#        EMAIL LINKS
# ===========================
def test_confirm_email_marks_verified_and_trusts_device(client, services, make_user):
    user = make_user(email_verified=False)
    token = create_link_token(user["id"], "email_confirmation")

    res = client.post("/api/v1/auth/confirm", json={"token": token})

    assert res.status_code == 200
    assert services.provider.users[user["id"]]["email_verified"] is True
    assert services.sessions.sessions[res.json()["deviceSessionId"]]["confidence_score"] == 100


def test_confirmation_link_works_once(client, services, make_user):
    user = make_user(email_verified=False)
    token = create_link_token(user["id"], "email_confirmation")

    first = client.post("/api/v1/auth/confirm", json={"token": token})
    replay = client.post("/api/v1/auth/confirm", json={"token": token})

    assert first.status_code == 200
    assert replay.status_code == 400
    assert len(services.sessions.sessions) == 1


def test_recovery_token_cannot_confirm_email(client, make_user):
    user = make_user(email_verified=False)
    res = client.post("/api/v1/auth/confirm", json={"token": create_link_token(user["id"], "recovery")})
    assert res.status_code == 400


def test_recovery_link_cannot_be_replayed(client, services, make_user):
    user = make_user()
    token = create_link_token(user["id"], "recovery")

    first = client.post("/api/v1/auth/reset-password", json={"token": token, "password": "N3w!Password"})
    replay = client.post("/api/v1/auth/reset-password", json={"token": token, "password": "Ev1l!Password"})

    assert first.status_code == 200
    assert replay.status_code == 400
    assert replay.json()["detail"] == "Invalid or expired link"
    assert services.provider.passwords[user["id"]] == "N3w!Password"
    assert len(services.sessions.sessions) == 1


def test_weak_password_does_not_spend_recovery_link(client, services, make_user):
    user = make_user()
    token = create_link_token(user["id"], "recovery")

    weak = client.post("/api/v1/auth/reset-password", json={"token": token, "password": "weak"})
    retry = client.post("/api/v1/auth/reset-password", json={"token": token, "password": "N3w!Password"})

    assert weak.status_code == 400
    assert retry.status_code == 200


def test_resend_confirmation_link(client, services, make_user, monkeypatch):
    sent = []

    async def record_link(to_email, subject, intro, url):
        sent.append((to_email, url))

    monkeypatch.setattr(email_service, "send_link", record_link)
    user = make_user(email="pending@example.com", email_verified=False)
    make_user(email="done@example.com")

    pending = client.post("/api/v1/auth/email/resend-confirmation", json={"email": "pending@example.com"})
    verified = client.post("/api/v1/auth/email/resend-confirmation", json={"email": "done@example.com"})
    unknown = client.post("/api/v1/auth/email/resend-confirmation", json={"email": "nobody@example.com"})

    assert pending.json() == verified.json() == unknown.json() == {"status": "success"}
    assert [to for to, _ in sent] == ["pending@example.com"]

    token = sent[0][1].split("token=", 1)[1]
    confirmed = client.post("/api/v1/auth/confirm", json={"token": token})
    assert confirmed.status_code == 200
    assert services.provider.users[user["id"]]["email_verified"] is True


def test_forgot_password_does_not_leak_accounts(client, make_user):
    make_user()
    known = client.post("/api/v1/auth/forgot-password", json={"email": "alice@example.com"})
    unknown = client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
    assert known.json() == unknown.json()


def test_reset_password_signs_in_with_high_trust(client, services, make_user):
    user = make_user()
    token = create_link_token(user["id"], "recovery")

    res = client.post("/api/v1/auth/reset-password", json={"token": token, "password": "N3w!Password"})
    body = res.json()

    assert body["relogin"] is False
    assert services.provider.passwords[user["id"]] == "N3w!Password"
    assert services.sessions.sessions[body["deviceSessionId"]]["is_trusted"] is True


def test_reset_password_with_relogin(client, services, make_user, auth_config):
    from authguard.core.config import PasswordResetConfig

    client.app.state.auth_config = auth_config.model_copy(
        update={"password_reset": PasswordResetConfig(require_relogin_after_reset=True)}
    )
    user = make_user()
    services.sessions.add_session(user["id"])

    res = client.post("/api/v1/auth/reset-password",
                      json={"token": create_link_token(user["id"], "recovery"), "password": "N3w!Password"})

    assert res.json() == {"status": "success", "relogin": True}
    assert services.sessions.sessions == {}


# ===========================
#      SESSION LIFECYCLE
# ===========================
def test_post_auth_recreates_missing_session(client, services, make_user):
    user = make_user()
    res = client.post("/api/v1/auth/post-auth", headers=auth_headers(user, "gone"))
    body = res.json()
    assert body["created"] is True
    assert body["deviceSessionId"] in services.sessions.sessions


def test_post_auth_keeps_live_session(client, services, make_user):
    user = make_user()
    sid = services.sessions.add_session(user["id"])
    res = client.post("/api/v1/auth/post-auth", headers=auth_headers(user, sid))
    assert res.json() == {"status": "success", "deviceSessionId": sid, "created": False}


def test_logout_removes_session(client, services, make_user):
    user = make_user()
    sid = services.sessions.add_session(user["id"])
    res = client.post("/api/v1/auth/logout", headers=auth_headers(user, sid))
    assert res.status_code == 200
    assert sid not in services.sessions.sessions


def test_current_user_profile(client, services, make_user):
    user = make_user()
    services.provider.add_verified_factor(user["id"])
    services.codes.backup_codes[user["id"]] = ["x"]

    res = client.get("/api/v1/auth/user", headers=auth_headers(user))
    auth = res.json()["auth"]

    assert auth["twoFactorEnabled"] is True
    assert auth["enabled2faMethods"] == ["authenticator", "backup_codes"]
    assert auth["defaultVerificationMethod"] == "authenticator"
    assert res.json()["has_backup_codes"] is True


def test_update_profile(client, services, make_user):
    user = make_user()
    sid = services.sessions.add_session(user["id"])
    res = client.post("/api/v1/auth/user/update", json={"name": "Alice B"}, headers=auth_headers(user, sid))
    assert res.json() == {"status": "success", "updated": ["name"]}
    assert "PROFILE_UPDATED" in services.events.types(user["id"])


# ===========================
#        RATE LIMITS
# ===========================
def test_device_code_guessing_is_rate_limited(client, services, make_user, tight_auth_limit):
    user = make_user()
    sid = services.sessions.add_session(user["id"], needs_verification=True, is_trusted=False)

    statuses = [
        client.post("/api/v1/auth/verify-device", json={"code": "000000"}, headers=auth_headers(user, sid)).status_code
        for _ in range(4)
    ]

    assert statuses == [400, 400, 400, 429]


def test_step_up_guessing_is_rate_limited(client, services, make_user, tight_auth_limit):
    user = make_user()
    sid = services.sessions.add_session(user["id"])

    statuses = [
        client.post("/api/v1/auth/verify", json={"method": "password", "code": "guess"},
                    headers=auth_headers(user, sid)).status_code
        for _ in range(4)
    ]

    assert statuses == [400, 400, 400, 429]
