# authguard/services/data_export_service.py
"""
User data exports.

A request is stored as `pending`; a background job gathers the user's
profile, device sessions and account events into a JSON file in GridFS,
marks the request `completed` and emails a one-time download link.
"""

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorDatabase

from authguard.core.config import AuthConfig, settings
from authguard.core.verification_codes import hash_code, verify_code
from authguard.db.models.data_export_model import DataExportRequest
from authguard.db.mongodb import get_export_bucket
from authguard.services import email_service

logger = logging.getLogger(__name__)

LIST_LIMIT = 10


class DataExportError(ValueError):
    pass


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, ObjectId):
        return str(obj)
    raise TypeError(f"Type {type(obj)} not serializable")


def _public(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "status": doc["status"],
        "created_at": doc.get("created_at"),
        "completed_at": doc.get("completed_at"),
    }


class DataExportService:
    def __init__(self, db: AsyncIOMotorDatabase, config: AuthConfig):
        self.db = db
        self.config = config

    async def request_export(self, user_id: str) -> Tuple[str, str]:
        """Create a pending request. Returns (export_id, plain download token)."""
        if not self.config.data_export.enabled:
            raise DataExportError("Data exports are not enabled")

        token = secrets.token_hex(32)
        request = DataExportRequest(
            user_id=user_id,
            status="pending",
            token_hash=hash_code(token),
            created_at=datetime.utcnow(),
        )
        result = await self.db.data_export_requests.insert_one(request.model_dump())
        return str(result.inserted_id), token

    async def list_exports(self, user_id: str) -> List[dict]:
        cursor = self.db.data_export_requests.find({"user_id": user_id}).sort("created_at", -1).limit(LIST_LIMIT)
        return [_public(d) for d in await cursor.to_list(length=LIST_LIMIT)]

    async def get_export(self, export_id: str, user_id: str) -> Optional[dict]:
        oid = _oid(export_id)
        if oid is None:
            return None
        doc = await self.db.data_export_requests.find_one({"_id": oid, "user_id": user_id})
        return _public(doc) if doc else None

    async def _collect(self, user_id: str) -> dict:
        user = await self.db.users.find_one({"_id": ObjectId(user_id)}, {"password": 0}) or {}
        user.pop("_id", None)

        sessions = await self.db.device_sessions.find({"user_id": user_id}, {"_id": 0}).to_list(length=None)
        devices = await self.db.devices.find({"user_id": user_id}, {"_id": 0}).to_list(length=None)
        events = await self.db.account_events.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1).to_list(length=None)

        return {
            "exported_at": datetime.utcnow(),
            "profile": user,
            "devices": devices,
            "device_sessions": sessions,
            "account_events": events,
        }

    async def build_export(self, export_id: str, user_id: str, token: str, email: str) -> None:
        """Background job. Failures are recorded on the request, not raised."""
        oid = ObjectId(export_id)
        await self.db.data_export_requests.update_one(
            {"_id": oid}, {"$set": {"status": "processing", "updated_at": datetime.utcnow()}}
        )

        try:
            payload = json.dumps(await self._collect(user_id), default=_json_default, indent=2).encode()
            file_id = await get_export_bucket(self.db).upload_from_stream(
                f"export-{export_id}.json",
                payload,
                metadata={"user_id": user_id, "export_id": export_id},
            )
        except Exception as e:
            logger.exception("Data export %s failed", export_id)
            await self.db.data_export_requests.update_one(
                {"_id": oid},
                {"$set": {"status": "failed", "error": str(e), "updated_at": datetime.utcnow()}},
            )
            return

        now = datetime.utcnow()
        await self.db.data_export_requests.update_one(
            {"_id": oid},
            {"$set": {"status": "completed", "file_id": str(file_id), "completed_at": now, "updated_at": now}},
        )
        logger.info("Data export %s completed", export_id)

        url = f"{settings.API_URL}/api/v1/account/data-exports/{export_id}/download?token={token}"
        try:
            await email_service.send_data_export_ready(email, url, self.config.data_export.download_expiration_hours)
        except Exception:
            logger.warning("Data export email for %s failed", export_id)

    async def open_download(self, export_id: str, token: str) -> Tuple[str, bytes]:
        """
        Check token, expiry and single use, then hand back the file and
        delete it. Returns (filename, content).
        """
        oid = _oid(export_id)
        doc = await self.db.data_export_requests.find_one({"_id": oid}) if oid else None
        if not doc:
            raise DataExportError("Export not found")

        if doc["status"] != "completed" or not doc.get("file_id"):
            raise DataExportError("Export is not ready")

        if doc.get("token_used"):
            raise DataExportError("Download link has already been used")

        expires_at = doc["completed_at"] + timedelta(hours=self.config.data_export.download_expiration_hours)
        if datetime.utcnow() > expires_at:
            raise DataExportError("Download link has expired")

        if not doc.get("token_hash") or not verify_code(token, doc["token_hash"]):
            raise DataExportError("Invalid download token")

        claimed = await self.db.data_export_requests.update_one(
            {"_id": oid, "token_used": False},
            {"$set": {"token_used": True, "updated_at": datetime.utcnow()}},
        )
        if claimed.modified_count == 0:
            raise DataExportError("Download link has already been used")

        bucket = get_export_bucket(self.db)
        file_id = ObjectId(doc["file_id"])
        stream = await bucket.open_download_stream(file_id)
        content = await stream.read()
        await bucket.delete(file_id)

        return f"data-export-{export_id}.json", content

    async def delete_user_exports(self, user_id: str) -> None:
        bucket = get_export_bucket(self.db)
        async for doc in self.db.data_export_requests.find({"user_id": user_id, "file_id": {"$ne": None}}):
            try:
                await bucket.delete(ObjectId(doc["file_id"]))
            except NoFile:
                # Already downloaded
                pass
        await self.db.data_export_requests.delete_many({"user_id": user_id})
