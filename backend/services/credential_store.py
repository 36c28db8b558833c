"""
Persistence for tenant Twilio configurations and the outbound call log.

Each configuration document holds the account SID in the clear (it is the
encryption salt) and the auth token in whatever format it was last written.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from core.database import db
from core.encryption import CURRENT_VERSION
from models import TwilioConfiguration, generate_id

logger = logging.getLogger(__name__)


class TwilioConfigStore:
    def __init__(self, database):
        self.configurations = database.twilio_configurations
        self.calls = database.calls

    async def get_for_tenant(self, tenant_id: str) -> Optional[dict]:
        return await self.configurations.find_one({"tenant_id": tenant_id}, {"_id": 0})

    async def list_for_tenant(self, tenant_id: str) -> List[dict]:
        cursor = self.configurations.find({"tenant_id": tenant_id}, {"_id": 0})
        return await cursor.to_list(length=None)

    async def save_auth_token(self, config_id: str, auth_token: str) -> bool:
        """Persist an upgraded auth token; False when no record matched."""
        result = await self.configurations.update_one(
            {"id": config_id},
            {"$set": {
                "auth_token": auth_token,
                "encryption_version": CURRENT_VERSION,
                "last_migration": datetime.now(timezone.utc).isoformat(),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }},
        )
        return result.matched_count > 0

    async def upsert_configuration(
        self,
        tenant_id: str,
        account_sid: str,
        auth_token: str,
        phone_number: Optional[str] = None,
    ) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        existing = await self.get_for_tenant(tenant_id)
        update = {
            "account_sid": account_sid,
            "auth_token": auth_token,
            "encryption_version": CURRENT_VERSION,
            "is_active": True,
            "updated_at": now,
        }
        if phone_number:
            update["phone_number"] = phone_number

        if existing:
            await self.configurations.update_one({"id": existing["id"]}, {"$set": update})
            return {**existing, **update}

        doc = TwilioConfiguration(
            tenant_id=tenant_id,
            account_sid=account_sid,
            auth_token=auth_token,
            encryption_version=CURRENT_VERSION,
            phone_number=phone_number,
        ).model_dump(mode="json")
        await self.configurations.insert_one(dict(doc))
        return doc

    async def record_call(self, call: dict) -> None:
        call.setdefault("id", generate_id())
        call.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        await self.calls.insert_one(dict(call))

    async def update_call(self, tenant_id: str, call_sid: str, updates: dict) -> bool:
        result = await self.calls.update_one(
            {"tenant_id": tenant_id, "twilio_call_sid": call_sid},
            {"$set": {**updates, "updated_at": datetime.now(timezone.utc).isoformat()}},
        )
        return result.matched_count > 0


def get_credential_store() -> TwilioConfigStore:
    return TwilioConfigStore(db)
