"""
Bulk upgrade of a tenant's stored Twilio credentials to the current format.

Invoked only from the superadmin maintenance endpoint. Records are processed
one at a time; a failure on one record is reported and the loop moves on.
"""
import logging

from pymongo.errors import PyMongoError

from core.encryption import (
    CURRENT_VERSION,
    CredentialCipher,
    CredentialError,
    CurrentEncrypted,
    parse_stored_credential,
)
from models import MigrationDetail, MigrationResult, MigrationStatus
from services.credential_store import TwilioConfigStore

logger = logging.getLogger(__name__)


def needs_migration(twilio_config: dict) -> bool:
    """
    True unless the record already holds a current-format value.

    Records that cannot be parsed (including ones tagged v2 whose value is
    not encrypted) count as needing migration, so they surface as failures
    in the migration result instead of being skipped.
    """
    try:
        credential = parse_stored_credential(
            twilio_config.get("auth_token"),
            twilio_config.get("encryption_version"),
        )
    except CredentialError:
        return True
    return not isinstance(credential, CurrentEncrypted)


async def force_migration_for_tenant(
    tenant_id: str,
    store: TwilioConfigStore,
    cipher: CredentialCipher,
) -> MigrationResult:
    configs = await store.list_for_tenant(tenant_id)
    if not configs:
        return MigrationResult(message="No configurations found for migration")

    migrated_count = 0
    details = []

    for twilio_config in configs:
        if not needs_migration(twilio_config):
            continue

        config_id = twilio_config.get("id", "unknown")
        try:
            result = cipher.reencrypt_with_enhanced_security(
                twilio_config.get("auth_token"),
                twilio_config.get("account_sid"),
                twilio_config.get("encryption_version"),
            )
            saved = await store.save_auth_token(config_id, result.new_encrypted)
        except CredentialError as exc:
            logger.error(f"Credential migration failed for config {config_id} (tenant {tenant_id}): {exc}")
            details.append(MigrationDetail(config_id=config_id, status=MigrationStatus.FAILED, error=str(exc)))
            continue
        except PyMongoError as exc:
            logger.error(f"Could not persist migrated credential for config {config_id}: {exc}")
            details.append(MigrationDetail(
                config_id=config_id,
                status=MigrationStatus.FAILED,
                error="Failed to save re-encrypted credential",
            ))
            continue

        if not saved:
            details.append(MigrationDetail(
                config_id=config_id,
                status=MigrationStatus.FAILED,
                from_method=result.from_method.value,
                error="Configuration no longer exists",
            ))
            continue

        migrated_count += 1
        details.append(MigrationDetail(
            config_id=config_id,
            status=MigrationStatus.SUCCESS,
            from_method=result.from_method.value,
        ))
        logger.info(
            f"Migrated Twilio credential {config_id} for tenant {tenant_id} "
            f"from {result.from_method.value} to pbkdf2"
        )

    failed_count = sum(1 for d in details if d.status == MigrationStatus.FAILED)
    return MigrationResult(
        message=f"Migration completed for {migrated_count} configurations ({failed_count} failed)",
        migrated_count=migrated_count,
        failed_count=failed_count,
        details=details,
    )
