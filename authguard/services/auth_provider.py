# authguard/services/auth_provider.py
"""
Identity platform facade.

Everything the account layer needs from the identity platform goes through
this fixed interface: users and their credentials, linked OAuth identities,
and MFA factors (TOTP via pyotp, phone codes via Twilio).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pyotp
from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from authguard.core.config import AuthConfig
from authguard.core.security import hash_password, verify_password
from authguard.core.verification_codes import generate_numeric_code, hash_code, verify_code
from authguard.db.models.mfa_factor_model import MFAChallenge, MFAFactor
from authguard.db.models.user_model import Identity, User
from authguard.services.sms_service import SmsDeliveryError, SmsService

logger = logging.getLogger(__name__)

CHALLENGE_TTL_MINUTES = 5

SOCIAL_PROVIDERS = ("google", "github")


class AuthProviderError(ValueError):
    pass


def _oid(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise AuthProviderError("Not found")


def public_user(doc: Optional[dict]) -> Optional[dict]:
    """User document without credentials, `_id` as `id`."""
    if not doc:
        return None
    user = {k: v for k, v in doc.items() if k not in ("_id", "password")}
    user["id"] = str(doc["_id"])
    return user


def public_factor(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "factor_type": doc["factor_type"],
        "status": doc["status"],
        "friendly_name": doc.get("friendly_name"),
        "created_at": doc.get("created_at"),
    }


class AuthProvider:
    def __init__(self, db: AsyncIOMotorDatabase, config: AuthConfig, sms: Optional[SmsService] = None):
        self.db = db
        self.config = config
        self.sms = sms or SmsService()

    # ==========================================================
    # USERS
    # ==========================================================
    async def create_user(
        self,
        email: str,
        password: Optional[str] = None,
        name: str = "",
        email_verified: bool = False,
        identity: Optional[Dict[str, Any]] = None,
    ) -> dict:
        now = datetime.utcnow()
        email = email.lower()

        identities = [Identity(provider="email", provider_id=email, created_at=now)] if password else []
        if identity:
            identities.append(Identity(
                provider=identity["provider"],
                provider_id=str(identity["provider_id"]),
                identity_data={"email": identity.get("email"), "name": identity.get("name")},
                created_at=now,
                last_sign_in_at=now,
            ))

        user = User(
            email=email,
            name=name,
            password=hash_password(password) if password else None,
            has_password=bool(password),
            email_verified=email_verified,
            identities=identities,
            created_at=now,
            updated_at=now,
        )

        try:
            result = await self.db.users.insert_one(user.model_dump())
        except DuplicateKeyError:
            raise AuthProviderError("Email already registered")

        logger.info("User %s created", result.inserted_id)
        return await self.get_user(str(result.inserted_id))

    async def get_user(self, user_id: str) -> Optional[dict]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        return public_user(await self.db.users.find_one({"_id": oid}))

    async def get_user_by_email(self, email: str) -> Optional[dict]:
        return public_user(await self.db.users.find_one({"email": email.lower()}))

    async def sign_in_with_password(self, email: str, password: str) -> dict:
        doc = await self.db.users.find_one({"email": email.lower()})
        if not doc or not verify_password(password, doc.get("password")):
            raise AuthProviderError("Invalid login credentials")

        await self.db.users.update_one({"_id": doc["_id"]}, {"$set": {"last_sign_in_at": datetime.utcnow()}})
        return public_user(doc)

    async def verify_password(self, user_id: str, password: str) -> bool:
        doc = await self.db.users.find_one({"_id": _oid(user_id)}, {"password": 1})
        return bool(doc) and verify_password(password, doc.get("password"))

    async def update_password(self, user_id: str, new_password: str) -> None:
        doc = await self.db.users.find_one({"_id": _oid(user_id)})
        if not doc:
            raise AuthProviderError("User not found")

        update = {
            "password": hash_password(new_password),
            "has_password": True,
            "updated_at": datetime.utcnow(),
        }
        ops = {"$set": update}
        if not any(i.get("provider") == "email" for i in doc.get("identities", [])):
            ops["$push"] = {"identities": Identity(
                provider="email", provider_id=doc["email"], created_at=datetime.utcnow()
            ).model_dump()}

        await self.db.users.update_one({"_id": doc["_id"]}, ops)

    async def update_email(self, user_id: str, new_email: str) -> None:
        """New address starts unverified until its confirmation link is used."""
        new_email = new_email.lower()
        if await self.db.users.find_one({"email": new_email}):
            raise AuthProviderError("Email already registered")

        await self.db.users.update_one(
            {"_id": _oid(user_id)},
            {"$set": {"email": new_email, "email_verified": False, "updated_at": datetime.utcnow()}},
        )
        await self.db.users.update_one(
            {"_id": _oid(user_id), "identities.provider": "email"},
            {"$set": {"identities.$.provider_id": new_email}},
        )

    async def mark_email_verified(self, user_id: str) -> None:
        await self.db.users.update_one(
            {"_id": _oid(user_id)},
            {"$set": {"email_verified": True, "updated_at": datetime.utcnow()}},
        )

    async def redeem_link_token(self, jti: str, user_id: str, expires_at: datetime) -> bool:
        """Spend an email link. False when it was already used."""
        try:
            await self.db.used_link_tokens.insert_one({"_id": jti, "user_id": user_id, "expires_at": expires_at})
        except DuplicateKeyError:
            logger.warning("Email link reused for user %s", user_id)
            return False
        return True

    async def update_profile(self, user_id: str, name: Optional[str] = None, avatar_url: Optional[str] = None) -> List[str]:
        fields = {}
        if name is not None:
            fields["name"] = name
        if avatar_url is not None:
            fields["avatar_url"] = avatar_url
        if not fields:
            return []

        await self.db.users.update_one(
            {"_id": _oid(user_id)},
            {"$set": {**fields, "updated_at": datetime.utcnow()}},
        )
        return list(fields)

    async def delete_user(self, user_id: str) -> None:
        await self.db.mfa_challenges.delete_many({"user_id": user_id})
        await self.db.mfa_factors.delete_many({"user_id": user_id})
        await self.db.users.delete_one({"_id": _oid(user_id)})
        logger.info("User %s deleted", user_id)

    # ==========================================================
    # IDENTITIES
    # ==========================================================
    async def sign_in_with_identity(self, claims: Dict[str, Any]) -> Tuple[dict, bool]:
        """
        Sign in from a verified identity assertion. Returns (user, is_new_user).
        An unknown identity whose email matches an account is linked to it.
        """
        provider = claims["provider"]
        provider_id = str(claims["provider_id"])
        now = datetime.utcnow()

        doc = await self.db.users.find_one({
            "identities": {"$elemMatch": {"provider": provider, "provider_id": provider_id}}
        })
        if doc:
            await self.db.users.update_one(
                {"_id": doc["_id"], "identities.provider": provider},
                {"$set": {"identities.$.last_sign_in_at": now, "last_sign_in_at": now}},
            )
            return public_user(doc), False

        existing = await self.get_user_by_email(claims["email"])
        if existing:
            await self.link_identity(existing["id"], claims)
            return await self.get_user(existing["id"]), False

        user = await self.create_user(
            claims["email"],
            name=claims.get("name") or "",
            email_verified=True,
            identity=claims,
        )
        return user, True

    async def link_identity(self, user_id: str, claims: Dict[str, Any]) -> None:
        provider = claims["provider"]
        provider_id = str(claims["provider_id"])

        owner = await self.db.users.find_one({
            "identities": {"$elemMatch": {"provider": provider, "provider_id": provider_id}}
        })
        if owner and str(owner["_id"]) != user_id:
            raise AuthProviderError("Identity is already linked to another account")
        if owner:
            return

        user = await self.db.users.find_one({"_id": _oid(user_id)})
        if not user:
            raise AuthProviderError("User not found")
        if any(i.get("provider") == provider for i in user.get("identities", [])):
            raise AuthProviderError(f"A {provider} account is already connected")

        identity = Identity(
            provider=provider,
            provider_id=provider_id,
            identity_data={"email": claims.get("email"), "name": claims.get("name")},
            created_at=datetime.utcnow(),
        )
        await self.db.users.update_one({"_id": user["_id"]}, {"$push": {"identities": identity.model_dump()}})

    async def unlink_identity(self, user_id: str, provider: str) -> None:
        user = await self.db.users.find_one({"_id": _oid(user_id)})
        if not user:
            raise AuthProviderError("User not found")

        identities = user.get("identities", [])
        if not any(i.get("provider") == provider for i in identities):
            raise AuthProviderError(f"No {provider} account is connected")

        remaining = [i for i in identities if i.get("provider") != provider]
        if not remaining:
            raise AuthProviderError("Cannot disconnect your only login method")

        await self.db.users.update_one(
            {"_id": user["_id"]},
            {"$pull": {"identities": {"provider": provider}}},
        )

    # ==========================================================
    # MFA FACTORS
    # ==========================================================
    async def list_factors(self, user_id: str) -> List[dict]:
        cursor = self.db.mfa_factors.find({"user_id": user_id}).sort("created_at", 1)
        return [public_factor(f) for f in await cursor.to_list(length=None)]

    async def enroll_factor(
        self,
        user_id: str,
        factor_type: str,
        phone: Optional[str] = None,
        friendly_name: Optional[str] = None,
    ) -> dict:
        """
        Start enrolling a factor. TOTP returns the secret and provisioning
        URI; the factor stays `unverified` until its first successful code.
        """
        if factor_type not in ("totp", "phone"):
            raise AuthProviderError("Unsupported factor type")
        if factor_type == "phone" and not phone:
            raise AuthProviderError("Phone number is required")

        if await self.db.mfa_factors.find_one({"user_id": user_id, "factor_type": factor_type, "status": "verified"}):
            raise AuthProviderError("This method is already enabled")

        # Abandoned enrollments
        await self.db.mfa_factors.delete_many({"user_id": user_id, "factor_type": factor_type, "status": "unverified"})

        now = datetime.utcnow()
        factor = MFAFactor(
            user_id=user_id,
            factor_type=factor_type,
            friendly_name=friendly_name,
            secret=pyotp.random_base32() if factor_type == "totp" else None,
            phone=phone,
            created_at=now,
            updated_at=now,
        )
        result = await self.db.mfa_factors.insert_one(factor.model_dump())

        enrolled = {"id": str(result.inserted_id), "type": factor_type}
        if factor_type == "totp":
            user = await self.get_user(user_id)
            enrolled["secret"] = factor.secret
            enrolled["uri"] = pyotp.TOTP(factor.secret).provisioning_uri(
                name=(user or {}).get("email", user_id),
                issuer_name=self.config.two_factor.issuer,
            )
        return enrolled

    async def _get_factor(self, user_id: str, factor_id: str) -> dict:
        factor = await self.db.mfa_factors.find_one({"_id": _oid(factor_id), "user_id": user_id})
        if not factor:
            raise AuthProviderError("Factor not found")
        return factor

    async def challenge(self, user_id: str, factor_id: str) -> str:
        """Open a challenge; phone factors get their code by SMS."""
        factor = await self._get_factor(user_id, factor_id)
        now = datetime.utcnow()

        code_hash = None
        if factor["factor_type"] == "phone":
            code = generate_numeric_code(6)
            code_hash = hash_code(code)
            try:
                self.sms.send_sms(factor["phone"], f"Your verification code is {code}")
            except SmsDeliveryError as e:
                raise AuthProviderError(str(e))

        challenge = MFAChallenge(
            factor_id=factor_id,
            user_id=user_id,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=CHALLENGE_TTL_MINUTES),
        )
        result = await self.db.mfa_challenges.insert_one(challenge.model_dump())
        return str(result.inserted_id)

    async def verify(self, user_id: str, factor_id: str, challenge_id: str, code: str) -> bool:
        factor = await self._get_factor(user_id, factor_id)
        challenge = await self.db.mfa_challenges.find_one({
            "_id": _oid(challenge_id),
            "factor_id": factor_id,
            "expires_at": {"$gt": datetime.utcnow()},
        })
        if not challenge:
            raise AuthProviderError("Challenge expired")

        if factor["factor_type"] == "totp":
            valid = pyotp.TOTP(factor["secret"]).verify(code, valid_window=1)
        else:
            valid = bool(challenge.get("code_hash")) and verify_code(code, challenge["code_hash"])

        if not valid:
            return False

        await self.db.mfa_challenges.delete_one({"_id": challenge["_id"]})
        if factor["status"] != "verified":
            await self.db.mfa_factors.update_one(
                {"_id": factor["_id"]},
                {"$set": {"status": "verified", "updated_at": datetime.utcnow()}},
            )
        return True

    async def latest_challenge(self, user_id: str, factor_id: str) -> Optional[str]:
        cursor = self.db.mfa_challenges.find({
            "user_id": user_id,
            "factor_id": factor_id,
            "expires_at": {"$gt": datetime.utcnow()},
        }).sort("created_at", -1).limit(1)
        found = await cursor.to_list(length=1)
        return str(found[0]["_id"]) if found else None

    async def challenge_and_verify(self, user_id: str, factor_id: str, code: str) -> bool:
        """
        TOTP: challenge and verify in one go. Phone: verify against the
        challenge whose code was already sent.
        """
        factor = await self._get_factor(user_id, factor_id)
        if factor["factor_type"] == "phone":
            challenge_id = await self.latest_challenge(user_id, factor_id)
            if not challenge_id:
                raise AuthProviderError("Request a code first")
        else:
            challenge_id = await self.challenge(user_id, factor_id)
        return await self.verify(user_id, factor_id, challenge_id, code)

    async def unenroll(self, user_id: str, factor_id: str) -> bool:
        result = await self.db.mfa_factors.delete_one({"_id": _oid(factor_id), "user_id": user_id})
        await self.db.mfa_challenges.delete_many({"factor_id": factor_id})
        return result.deleted_count > 0
