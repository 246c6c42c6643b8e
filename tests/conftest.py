"""
Shared fixtures: the FastAPI app wired to in-memory services.

Route tests exercise the real routers, dependencies, step-up gate and
VerificationService; only persistence-backed services are swapped out.
"""

import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from authguard.api import deps
from authguard.core import rate_limit
from authguard.core.config import AuthConfig, RateLimitConfig, RateLimitTier, SensitiveActionsConfig
from authguard.core.device_trust import DeviceTrustScorer, TrustLevel
from authguard.core.security import create_access_token
from authguard.db.mongodb import get_database
from authguard.main import app
from authguard.services.account_event_service import AccountEventType, device_snapshot
from authguard.services.auth_provider import AuthProviderError

TOTP_CODE = "123456"
DEVICE_CODE = "654321"
EMAIL_CODE = "111222"

_ids = itertools.count(1)


def new_id(prefix: str) -> str:
    return f"{prefix}{next(_ids)}"


# ===========================
#        FAKE SERVICES
# ===========================
class FakeAuthProvider:
    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.passwords: Dict[str, str] = {}
        self.factors: Dict[str, List[dict]] = {}
        self.deleted: List[str] = []
        self.redeemed_links: Dict[str, str] = {}

    async def create_user(self, email, password=None, name="", email_verified=False, identity=None):
        if any(u["email"] == email.lower() for u in self.users.values()):
            raise AuthProviderError("Email already registered")

        user_id = new_id("user")
        identities = [{"provider": "email", "provider_id": email.lower()}] if password else []
        if identity:
            identities.append({"provider": identity["provider"], "provider_id": str(identity["provider_id"])})

        self.users[user_id] = {
            "id": user_id,
            "email": email.lower(),
            "name": name,
            "avatar_url": "",
            "has_password": bool(password),
            "email_verified": email_verified,
            "identities": identities,
        }
        if password:
            self.passwords[user_id] = password
        return dict(self.users[user_id])

    async def get_user(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    async def get_user_by_email(self, email):
        return next((dict(u) for u in self.users.values() if u["email"] == email.lower()), None)

    async def sign_in_with_password(self, email, password):
        user = await self.get_user_by_email(email)
        if not user or self.passwords.get(user["id"]) != password:
            raise AuthProviderError("Invalid login credentials")
        return user

    async def verify_password(self, user_id, password):
        return self.passwords.get(user_id) == password

    async def update_password(self, user_id, new_password):
        self.passwords[user_id] = new_password
        self.users[user_id]["has_password"] = True

    async def update_email(self, user_id, new_email):
        if any(u["email"] == new_email for u in self.users.values()):
            raise AuthProviderError("Email already registered")
        self.users[user_id].update(email=new_email, email_verified=False)

    async def mark_email_verified(self, user_id):
        self.users[user_id]["email_verified"] = True

    async def redeem_link_token(self, jti, user_id, expires_at):
        if jti in self.redeemed_links:
            return False
        self.redeemed_links[jti] = user_id
        return True

    async def update_profile(self, user_id, name=None, avatar_url=None):
        fields = {k: v for k, v in (("name", name), ("avatar_url", avatar_url)) if v is not None}
        self.users[user_id].update(fields)
        return list(fields)

    async def delete_user(self, user_id):
        self.users.pop(user_id, None)
        self.factors.pop(user_id, None)
        self.deleted.append(user_id)

    async def sign_in_with_identity(self, claims):
        for user in self.users.values():
            if any(i["provider"] == claims["provider"] and i["provider_id"] == str(claims["provider_id"])
                   for i in user["identities"]):
                return dict(user), False
        existing = await self.get_user_by_email(claims["email"])
        if existing:
            await self.link_identity(existing["id"], claims)
            return await self.get_user(existing["id"]), False
        user = await self.create_user(claims["email"], email_verified=True, identity=claims)
        return user, True

    async def link_identity(self, user_id, claims):
        self.users[user_id]["identities"].append(
            {"provider": claims["provider"], "provider_id": str(claims["provider_id"])}
        )

    async def unlink_identity(self, user_id, provider):
        identities = self.users[user_id]["identities"]
        if not any(i["provider"] == provider for i in identities):
            raise AuthProviderError(f"No {provider} account is connected")
        remaining = [i for i in identities if i["provider"] != provider]
        if not remaining:
            raise AuthProviderError("Cannot disconnect your only login method")
        self.users[user_id]["identities"] = remaining

    async def list_factors(self, user_id):
        return [dict(f) for f in self.factors.get(user_id, [])]

    async def enroll_factor(self, user_id, factor_type, phone=None, friendly_name=None):
        factor = {"id": new_id("factor"), "factor_type": factor_type, "status": "unverified",
                  "friendly_name": friendly_name}
        self.factors.setdefault(user_id, []).append(factor)
        enrolled = {"id": factor["id"], "type": factor_type}
        if factor_type == "totp":
            enrolled.update(secret="JBSWY3DPEHPK3PXP", uri="otpauth://totp/test")
        return enrolled

    async def challenge(self, user_id, factor_id):
        return new_id("challenge")

    async def verify(self, user_id, factor_id, challenge_id, code):
        return await self.challenge_and_verify(user_id, factor_id, code)

    async def challenge_and_verify(self, user_id, factor_id, code):
        factor = next((f for f in self.factors.get(user_id, []) if f["id"] == factor_id), None)
        if factor is None:
            raise AuthProviderError("Factor not found")
        if code != TOTP_CODE:
            return False
        factor["status"] = "verified"
        return True

    async def unenroll(self, user_id, factor_id):
        before = len(self.factors.get(user_id, []))
        self.factors[user_id] = [f for f in self.factors.get(user_id, []) if f["id"] != factor_id]
        return len(self.factors[user_id]) < before

    # -- test helpers --
    def add_verified_factor(self, user_id, factor_type="totp"):
        factor = {"id": new_id("factor"), "factor_type": factor_type, "status": "verified", "friendly_name": None}
        self.factors.setdefault(user_id, []).append(factor)
        return factor


class FakeEventService:
    def __init__(self):
        self.events: List[dict] = []

    async def log_event(self, user_id, event_type, metadata=None, device_session_id=None, device=None):
        event = {
            "id": new_id("event"),
            "user_id": user_id,
            "event_type": AccountEventType(event_type).value,
            "device_session_id": device_session_id,
            "metadata": {**({"device": device_snapshot(device)} if device else {}), **(metadata or {})},
            "created_at": datetime.utcnow(),
        }
        self.events.append(event)
        return event["id"]

    async def list_events(self, user_id, page=1, limit=20):
        mine = [e for e in reversed(self.events) if e["user_id"] == user_id]
        start = (page - 1) * limit
        return mine[start:start + limit], len(mine)

    def types(self, user_id=None):
        return [e["event_type"] for e in self.events if user_id is None or e["user_id"] == user_id]


class FakeDeviceSessionService:
    def __init__(self, config: AuthConfig, events: FakeEventService):
        self.config = config
        self.events = events
        self.scorer = DeviceTrustScorer(config.device_trust)
        self.sessions: Dict[str, dict] = {}

    async def get_trusted_sessions(self, user_id):
        return [dict(s) for s in self.sessions.values() if s["user_id"] == user_id and s["is_trusted"]]

    async def setup_device_session(self, user_id, fingerprint, trust_level=TrustLevel.NORMAL,
                                   is_new_user=False, has_two_factor=False, provider="email"):
        trusted = await self.get_trusted_sessions(user_id)
        trust = self.scorer.evaluate(trust_level, trusted, fingerprint,
                                     is_new_user=is_new_user, has_two_factor=has_two_factor)
        session_id = await self.create_device_session(user_id, fingerprint, trust, provider)
        return session_id, trust

    async def create_device_session(self, user_id, fingerprint, trust, provider="email", reason="device_match"):
        await self.events.log_event(user_id, AccountEventType.NEW_DEVICE_LOGIN, device=fingerprint)
        now = datetime.utcnow()
        session_id = new_id("session")
        self.sessions[session_id] = {
            "id": session_id,
            "user_id": user_id,
            "device_id": new_id("device"),
            "device": fingerprint.model_dump(),
            "confidence_score": trust.score,
            "is_trusted": trust.is_trusted,
            "needs_verification": trust.needs_verification,
            "provider": provider,
            "aal": "aal1",
            "device_verified_at": None,
            "last_sensitive_verification_at": None,
            "last_active": now,
            "created_at": now,
            "expires_at": now + timedelta(days=365),
        }
        if trust.is_trusted:
            await self.events.log_event(user_id, AccountEventType.DEVICE_TRUSTED_AUTO,
                                        device_session_id=session_id, device=fingerprint)
        return session_id

    async def get_session(self, session_id, user_id=None):
        session = self.sessions.get(session_id)
        if not session or (user_id and session["user_id"] != user_id):
            return None
        return dict(session)

    async def list_sessions(self, user_id):
        return [dict(s) for s in self.sessions.values() if s["user_id"] == user_id]

    async def get_authenticator_assurance_level(self, session_id):
        return (self.sessions.get(session_id) or {}).get("aal") or "aal1"

    async def mark_device_verified(self, session_id):
        self.sessions[session_id].update(needs_verification=False, device_verified_at=datetime.utcnow())
        return True

    async def trust_session(self, session_id, user_id):
        self.sessions[session_id].update(is_trusted=True, needs_verification=False)
        return True

    async def stamp_sensitive_verification(self, session_id, aal=None):
        session = self.sessions.get(session_id)
        if not session:
            return False
        session["last_sensitive_verification_at"] = datetime.utcnow()
        if aal == "aal2":
            session["aal"] = "aal2"
        return True

    async def touch(self, session_id):
        if session_id in self.sessions:
            self.sessions[session_id]["last_active"] = datetime.utcnow()

    async def revoke_session(self, session_id, user_id):
        session = await self.get_session(session_id, user_id=user_id)
        if session:
            del self.sessions[session_id]
        return session

    async def revoke_other_sessions(self, user_id, keep_session_id):
        others = [s for s in await self.list_sessions(user_id) if s["id"] != keep_session_id]
        for s in others:
            del self.sessions[s["id"]]
        return others

    async def delete_session(self, session_id):
        return self.sessions.pop(session_id, None) is not None

    async def delete_user_sessions(self, user_id):
        mine = [sid for sid, s in self.sessions.items() if s["user_id"] == user_id]
        for sid in mine:
            del self.sessions[sid]
        return len(mine)

    # -- test helpers --
    def add_session(self, user_id, verified_minutes_ago: Optional[int] = None, **fields):
        now = datetime.utcnow()
        session_id = new_id("session")
        self.sessions[session_id] = {
            "id": session_id,
            "user_id": user_id,
            "device_id": new_id("device"),
            "device": {"device_name": "Unknown Device", "browser": "Chrome", "os": "Mac OS X",
                       "ip_address": "203.0.113.5"},
            "confidence_score": 85,
            "is_trusted": True,
            "needs_verification": False,
            "provider": "email",
            "aal": "aal1",
            "device_verified_at": None,
            "last_sensitive_verification_at": (
                now - timedelta(minutes=verified_minutes_ago) if verified_minutes_ago is not None else None
            ),
            "last_active": now,
            "created_at": now,
            "expires_at": now + timedelta(days=365),
            **fields,
        }
        return session_id


class FakeCodeService:
    def __init__(self):
        self.device_codes: Dict[tuple, str] = {}
        self.email_codes: Dict[tuple, str] = {}
        self.backup_codes: Dict[str, List[str]] = {}

    async def issue_device_code(self, user_id, device_session_id):
        self.device_codes[(user_id, device_session_id)] = DEVICE_CODE
        return DEVICE_CODE

    async def consume_device_code(self, user_id, device_session_id, code):
        if self.device_codes.get((user_id, device_session_id)) == code:
            del self.device_codes[(user_id, device_session_id)]
            return True
        return False

    async def issue_email_code(self, user_id, device_session_id):
        self.email_codes[(user_id, device_session_id)] = EMAIL_CODE
        return EMAIL_CODE

    async def consume_email_code(self, user_id, device_session_id, code):
        if self.email_codes.get((user_id, device_session_id)) == code:
            del self.email_codes[(user_id, device_session_id)]
            return True
        return False

    async def generate_backup_codes(self, user_id):
        codes = [f"0000-0000-0000-000{i}-00{i}" for i in range(1, 9)]
        self.backup_codes[user_id] = list(codes)
        return codes

    async def has_backup_codes(self, user_id):
        return bool(self.backup_codes.get(user_id))

    async def consume_backup_code(self, user_id, code):
        if code in self.backup_codes.get(user_id, []):
            self.backup_codes[user_id].remove(code)
            return True
        return False

    async def delete_backup_codes(self, user_id):
        self.backup_codes.pop(user_id, None)

    async def delete_user_codes(self, user_id):
        await self.delete_backup_codes(user_id)


class FakeDataExportService:
    def __init__(self):
        self.exports: Dict[str, dict] = {}
        self.built: List[str] = []

    async def request_export(self, user_id):
        export_id = new_id("export")
        self.exports[export_id] = {"id": export_id, "user_id": user_id, "status": "pending",
                                   "created_at": datetime.utcnow(), "completed_at": None}
        return export_id, "a" * 64

    async def build_export(self, export_id, user_id, token, email):
        self.exports[export_id].update(status="completed", completed_at=datetime.utcnow())
        self.built.append(export_id)

    async def list_exports(self, user_id):
        return [e for e in self.exports.values() if e["user_id"] == user_id]

    async def get_export(self, export_id, user_id):
        export = self.exports.get(export_id)
        return export if export and export["user_id"] == user_id else None

    async def open_download(self, export_id, token):
        return f"data-export-{export_id}.json", b"{}"

    async def delete_user_exports(self, user_id):
        self.exports = {k: v for k, v in self.exports.items() if v["user_id"] != user_id}


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def zremrangebyscore(self, key, low, high):
        self.ops.append(lambda: self._trim(key, high))

    def zadd(self, key, mapping):
        self.ops.append(lambda: self.store.setdefault(key, {}).update(mapping))

    def zcard(self, key):
        self.ops.append(lambda: len(self.store.get(key, {})))

    def expire(self, key, seconds):
        self.ops.append(lambda: True)

    def execute(self):
        return [op() for op in self.ops]

    def _trim(self, key, high):
        members = self.store.get(key, {})
        stale = [m for m, score in members.items() if score <= high]
        for m in stale:
            del members[m]
        return len(stale)


class FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self):
        return FakePipeline(self.store)


# ===========================
#          FIXTURES
# ===========================
@pytest.fixture
def auth_config():
    return AuthConfig(
        rate_limits=RateLimitConfig(enabled=False),
        sensitive_actions=SensitiveActionsConfig(grace_period_minutes=60),
    )


@pytest.fixture
def services(auth_config):
    events = FakeEventService()
    return SimpleNamespace(
        config=auth_config,
        events=events,
        provider=FakeAuthProvider(),
        sessions=FakeDeviceSessionService(auth_config, events),
        codes=FakeCodeService(),
        exports=FakeDataExportService(),
    )


@pytest.fixture
def client(services):
    previous_config = app.state.auth_config
    app.state.auth_config = services.config

    app.dependency_overrides[get_database] = lambda: None
    app.dependency_overrides[deps.get_auth_provider] = lambda: services.provider
    app.dependency_overrides[deps.get_event_service] = lambda: services.events
    app.dependency_overrides[deps.get_device_session_service] = lambda: services.sessions
    app.dependency_overrides[deps.get_code_service] = lambda: services.codes
    app.dependency_overrides[deps.get_data_export_service] = lambda: services.exports

    yield TestClient(app)

    app.dependency_overrides.clear()
    app.state.auth_config = previous_config


@pytest.fixture
def make_user(services):
    """Store a user directly in the fake provider; returns the live user dict."""
    def _make(email="alice@example.com", password="Str0ng!Pass", email_verified=True):
        user_id = new_id("user")
        services.provider.users[user_id] = {
            "id": user_id,
            "email": email,
            "name": "Alice",
            "avatar_url": "",
            "has_password": password is not None,
            "email_verified": email_verified,
            "identities": [{"provider": "email", "provider_id": email}] if password else [],
        }
        if password:
            services.provider.passwords[user_id] = password
        return services.provider.users[user_id]

    return _make


def auth_headers(user: dict, session_id: Optional[str] = None) -> dict:
    claims = {"id": user["id"], "email": user["email"]}
    if session_id:
        claims["sid"] = session_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def tight_auth_limit(client, auth_config, monkeypatch):
    """Rate limiting on, three `auth` tier requests per minute, counted in memory."""
    store = FakeRedis()
    monkeypatch.setattr(rate_limit, "get_redis", lambda: store)
    client.app.state.auth_config = auth_config.model_copy(
        update={"rate_limits": RateLimitConfig(auth=RateLimitTier(limit=3, window_seconds=60))}
    )
    return store


@pytest.fixture
def mongo_db():
    """Fresh in-memory Motor database for service-level tests."""
    return AsyncMongoMockClient()["authguard_test"]
