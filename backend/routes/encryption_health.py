"""Encryption health routes - credential health report and maintenance actions"""
from fastapi import APIRouter, Depends, HTTPException, Request
from datetime import datetime, timezone
import logging

from pymongo.errors import PyMongoError

from core.auth import require_admin, require_superadmin
from core.credential_health import CredentialHealthMonitor, get_health_monitor
from core.encryption import CredentialCipher, get_credential_cipher
from core.security import audit_log, limiter
from models import MaintenanceAction, MaintenanceRequest
from services.credential_migration import force_migration_for_tenant
from services.credential_store import TwilioConfigStore, get_credential_store

router = APIRouter(prefix="/encryption", tags=["encryption"])
logger = logging.getLogger(__name__)

VALID_ACTIONS = {action.value for action in MaintenanceAction}


@router.get("/health")
async def get_encryption_health(
    current_user: dict = Depends(require_admin),
    monitor: CredentialHealthMonitor = Depends(get_health_monitor),
    store: TwilioConfigStore = Depends(get_credential_store),
):
    """Encryption metrics, security scoring, alerts and recommendations (admin only)"""
    tenant_id = current_user.get("tenant_id")
    twilio_config = None
    if tenant_id:
        try:
            twilio_config = await store.get_for_tenant(tenant_id)
        except PyMongoError as exc:
            logger.error(f"Could not load Twilio configuration for health report: {exc}")
            raise HTTPException(status_code=503, detail="Credential store unavailable")

    report = monitor.build_report(twilio_config)
    return report.model_dump(by_alias=True)


@router.post("/health")
@limiter.limit("20/minute")
async def perform_maintenance(
    request: Request,
    data: MaintenanceRequest,
    current_user: dict = Depends(require_superadmin),
    monitor: CredentialHealthMonitor = Depends(get_health_monitor),
    cipher: CredentialCipher = Depends(get_credential_cipher),
    store: TwilioConfigStore = Depends(get_credential_store),
):
    """Run a maintenance action: clear_cache, reset_metrics or force_migration (superadmin only)"""
    if data.action not in VALID_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action")

    action = MaintenanceAction(data.action)
    target_tenant = data.tenant_id or current_user.get("tenant_id")
    success = True

    if action == MaintenanceAction.CLEAR_CACHE:
        monitor.clear_key_cache()
        result = {"message": "Key cache cleared successfully"}

    elif action == MaintenanceAction.RESET_METRICS:
        # Counters are process-lifetime; operators reset them by restarting the process
        success = False
        result = {
            "message": "Metrics reset not implemented",
            "action": "No counters were changed; metrics reset when the process restarts",
        }

    else:
        if not target_tenant:
            raise HTTPException(status_code=400, detail="tenant_id is required for force_migration")
        try:
            migration = await force_migration_for_tenant(target_tenant, store, cipher)
        except PyMongoError as exc:
            logger.error(f"Force migration could not read configurations for tenant {target_tenant}: {exc}")
            raise HTTPException(status_code=503, detail="Credential store unavailable")
        success = migration.failed_count == 0
        result = migration.model_dump(by_alias=True, mode="json")

    await audit_log(
        action.value.upper(),
        "encryption",
        target_tenant or "global",
        current_user.get("id"),
        target_tenant,
        metadata={"success": success},
        request=request,
    )

    return {
        "success": success,
        "action": action.value,
        "result": result,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.delete("/health")
@limiter.limit("20/minute")
async def clear_key_cache(
    request: Request,
    current_user: dict = Depends(require_superadmin),
    monitor: CredentialHealthMonitor = Depends(get_health_monitor),
):
    """Clear the derived key cache (superadmin only)"""
    monitor.clear_key_cache()
    return {
        "success": True,
        "message": "Cache cleared successfully",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
