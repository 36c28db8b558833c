"""Twilio routes - tenant credential configuration and outbound calling"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from datetime import datetime, timezone
import logging
import time

from pymongo.errors import PyMongoError
from twilio.base.exceptions import TwilioRestException

from core.auth import get_current_user, get_tenant_id, require_credential_manager
from core.credential_health import CredentialHealthMonitor, get_health_monitor, tenant_status
from core.encryption import CURRENT_VERSION, CredentialCipher, CredentialError, get_credential_cipher
from core.security import audit_log
from core.utils import public_base_url, redact_credentials
from models import (
    CallRecord,
    OutboundCallRequest,
    TwilioConfigureRequest,
    TwilioConfigurationResponse,
)
from services.credential_store import TwilioConfigStore, get_credential_store
from services.twilio_credentials import (
    TwilioCredentialsUnavailable,
    resolve_auth_token,
    self_heal_credential,
    should_self_heal,
)
from services.twilio_service import TwilioService, get_twilio_service

router = APIRouter(prefix="/twilio", tags=["twilio"])
logger = logging.getLogger(__name__)


def _require_tenant(tenant_id):
    if not tenant_id:
        raise HTTPException(status_code=400, detail="No tenant found")
    return tenant_id


# ============= CONFIGURATION =============

@router.post("/configure", response_model=TwilioConfigurationResponse)
async def configure_twilio(
    data: TwilioConfigureRequest,
    request: Request,
    current_user: dict = Depends(require_credential_manager),
    tenant_id: str = Depends(get_tenant_id),
    cipher: CredentialCipher = Depends(get_credential_cipher),
    store: TwilioConfigStore = Depends(get_credential_store),
    twilio: TwilioService = Depends(get_twilio_service),
):
    """Validate and save the tenant's Twilio credentials; the auth token is stored encrypted"""
    _require_tenant(tenant_id)

    validation = await run_in_threadpool(twilio.validate_credentials, data.account_sid, data.auth_token)
    if not validation["valid"]:
        raise HTTPException(status_code=400, detail=validation["error"] or "Invalid Twilio credentials")

    try:
        encrypted = cipher.encrypt(data.auth_token, data.account_sid)
    except CredentialError:
        raise HTTPException(status_code=500, detail="Failed to secure Twilio credentials")

    saved = await store.upsert_configuration(tenant_id, data.account_sid, encrypted, data.phone_number)

    await audit_log(
        "CONFIGURE",
        "twilio_configuration",
        saved["id"],
        current_user.get("id"),
        tenant_id,
        metadata={"encryption_version": CURRENT_VERSION, "account_sid": data.account_sid},
        request=request,
    )

    return TwilioConfigurationResponse(
        success=True,
        configured=True,
        account_sid=data.account_sid,
        phone_number=saved.get("phone_number"),
        encryption_version=CURRENT_VERSION,
    )


@router.get("/settings")
async def get_twilio_settings(
    current_user: dict = Depends(require_credential_manager),
    tenant_id: str = Depends(get_tenant_id),
    store: TwilioConfigStore = Depends(get_credential_store),
):
    """Current Twilio configuration with the auth token redacted"""
    _require_tenant(tenant_id)
    twilio_config = await store.get_for_tenant(tenant_id)
    if not twilio_config:
        return {"configured": False}
    return {
        "configured": True,
        "configuration": redact_credentials(twilio_config),
        "encryption": tenant_status(twilio_config).model_dump(),
    }


# ============= OUTBOUND CALLS =============

@router.post("/call/outbound")
async def initiate_outbound_call(
    data: OutboundCallRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    tenant_id: str = Depends(get_tenant_id),
    cipher: CredentialCipher = Depends(get_credential_cipher),
    store: TwilioConfigStore = Depends(get_credential_store),
    twilio: TwilioService = Depends(get_twilio_service),
    monitor: CredentialHealthMonitor = Depends(get_health_monitor),
):
    """Place an outbound call with the tenant's Twilio account"""
    started = time.monotonic()
    _require_tenant(tenant_id)

    twilio_config = await store.get_for_tenant(tenant_id)
    if not twilio_config or not twilio_config.get("is_active"):
        raise HTTPException(status_code=400, detail="Twilio is not configured for this tenant")

    try:
        token = resolve_auth_token(twilio_config, tenant_id, cipher)
    except TwilioCredentialsUnavailable:
        raise HTTPException(
            status_code=500,
            detail={
                "error": "Twilio authentication configuration error",
                "details": "Auth token decryption failed. Please reconfigure Twilio settings.",
                "action": "RE_SAVE_TWILIO_CONFIGURATION",
            },
        )

    if should_self_heal(token):
        background_tasks.add_task(self_heal_credential, twilio_config, tenant_id, store, cipher)

    from_number = data.from_number or twilio_config.get("phone_number")
    if not from_number:
        raise HTTPException(status_code=400, detail="No caller ID configured for this tenant")

    status_callback = f"{public_base_url(request)}/api/v1/twilio/webhook/{tenant_id}/status"
    account_sid = twilio_config["account_sid"]

    try:
        call = await run_in_threadpool(
            twilio.place_call,
            account_sid,
            token.auth_token,
            data.to,
            from_number,
            status_callback,
        )
    except TwilioRestException as e:
        if e.status == 401:
            logger.error(
                f"[Twilio Auth Failed] tenant={tenant_id} account={account_sid} "
                f"method={token.method} code={e.code}"
            )
            raise HTTPException(
                status_code=401,
                detail={
                    "error": "Twilio authentication failed",
                    "details": "Invalid account SID or auth token. Please verify your Twilio credentials.",
                    "action": "UPDATE_TWILIO_CREDENTIALS",
                },
            )
        logger.error(f"[Twilio API Error] tenant={tenant_id} status={e.status} code={e.code}: {e.msg}")
        status = e.status if e.status and 400 <= e.status < 600 else 502
        raise HTTPException(
            status_code=status,
            detail={"error": "Failed to initiate call", "twilio_error_code": e.code},
        )

    record = CallRecord(
        tenant_id=tenant_id,
        twilio_call_sid=call["sid"],
        from_number=from_number,
        to_number=data.to,
        initiated_by=current_user.get("id"),
        encryption_method=token.method,
    )
    await store.record_call(record.model_dump(mode="json"))

    return {
        "success": True,
        "message": "Call initiated successfully",
        "call_sid": call["sid"],
        "to": call["to"],
        "from": call["from"],
        "status": call["status"],
        "performance": {
            "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
            "decryption_method": token.method,
            "self_healing_scheduled": should_self_heal(token),
            "encryption_health": monitor.summary(),
        },
    }


@router.get("/call/outbound")
async def get_outbound_call_status(
    tenant_id: str = Depends(get_tenant_id),
    store: TwilioConfigStore = Depends(get_credential_store),
    monitor: CredentialHealthMonitor = Depends(get_health_monitor),
):
    """Whether the tenant can place outbound calls, plus encryption health"""
    _require_tenant(tenant_id)
    twilio_config = await store.get_for_tenant(tenant_id) or {}
    return {
        "configured": bool(twilio_config),
        "active": bool(twilio_config.get("is_active")),
        "encryption_version": twilio_config.get("encryption_version") or "unknown",
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "health": monitor.summary(),
    }


# ============= STATUS CALLBACKS =============

CALL_STATUS_MAP = {
    "queued": "queued",
    "initiated": "queued",
    "ringing": "ringing",
    "in-progress": "in-progress",
    "completed": "completed",
    "busy": "busy",
    "failed": "failed",
    "no-answer": "no-answer",
    "canceled": "canceled",
}


def _optional_int(value):
    try:
        return int(value) if value else None
    except ValueError:
        return None


def call_status_updates(form_data) -> dict:
    """Translate a Twilio status callback into call record fields"""
    call_status = form_data.get("CallStatus", "")
    updates = {"status": CALL_STATUS_MAP.get(call_status, call_status)}

    if call_status == "completed":
        duration = _optional_int(form_data.get("CallDuration"))
        if duration is not None:
            updates["duration_seconds"] = duration
        updates["ended_at"] = datetime.now(timezone.utc).isoformat()
        price = form_data.get("Price")
        if price:
            try:
                updates["price"] = float(price)
                updates["price_unit"] = form_data.get("PriceUnit") or "USD"
            except ValueError:
                logger.warning(f"Ignoring unparseable call price: {price}")

    recording_url = form_data.get("RecordingUrl")
    if recording_url:
        updates["recording_url"] = recording_url
        updates["recording_duration"] = _optional_int(form_data.get("RecordingDuration"))

    return updates


@router.post("/webhook/{tenant_id}/status")
async def outbound_call_status_webhook(
    tenant_id: str,
    request: Request,
    store: TwilioConfigStore = Depends(get_credential_store),
):
    """Handle Twilio status callbacks for calls placed through /call/outbound"""
    form_data = await request.form()
    call_sid = form_data.get("CallSid", "")
    if not call_sid:
        raise HTTPException(status_code=400, detail="Missing CallSid")

    updates = call_status_updates(form_data)
    logger.info(f"Outbound call status: {call_sid} -> {updates['status']}")

    try:
        updated = await store.update_call(tenant_id, call_sid, updates)
    except PyMongoError as e:
        # Callback is always acknowledged
        logger.error(f"Failed to update call {call_sid}: {e}")
        updated = False
    return {"received": True, "updated": updated}
