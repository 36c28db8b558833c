"""
Security hardening for Fieldhand:
  - Rate limiting via slowapi
  - Audit logging (who did what to which record)
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from core.database import db

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rate Limiting
# ---------------------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address)
"""
Registered on the app in server.py:
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
"""


# ---------------------------------------------------------------------------
# Audit Logging
# ---------------------------------------------------------------------------

async def audit_log(
    action: str,
    resource_type: str,
    resource_id: str,
    user_id: str,
    tenant_id: Optional[str],
    metadata: Optional[dict] = None,
    request: Optional[Request] = None,
) -> None:
    """
    Record an immutable audit log entry. Never stores credential values.

    Examples:
        await audit_log("CONFIGURE", "twilio_configuration", config_id, user["id"], tenant_id)
        await audit_log("FORCE_MIGRATION", "encryption", tenant_id, user["id"], tenant_id,
                        metadata={"migrated": 3})
    """
    ip_address = None
    if request:
        forwarded = request.headers.get("x-forwarded-for")
        ip_address = forwarded.split(",")[0].strip() if forwarded else request.client.host

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "user_id": user_id,
        "tenant_id": tenant_id,
        "ip_address": ip_address,
        "metadata": metadata or {},
    }

    try:
        await db.audit_logs.insert_one(entry)
    except Exception as exc:
        # Audit logging must never break the main request
        logger.error(f"Audit log write failed: {exc}")
