"""
Reading and self-healing a tenant's stored Twilio auth token.

resolve_auth_token() walks the fallback chain:
  1. stored value (v2, legacy or plaintext)
  2. TWILIO_AUTH_TOKEN_<tenant_id> environment override
  3. raw stored value, development only
and otherwise fails closed.
"""
import logging
from dataclasses import dataclass, field

from pymongo.errors import PyMongoError

from core import config
from core.credential_metrics import EncryptionMethod
from core.encryption import CredentialCipher, CredentialError
from services.credential_store import TwilioConfigStore

logger = logging.getLogger(__name__)

ENV_OVERRIDE = "env_override"
DEVELOPMENT_RAW = "development_raw"


class TwilioCredentialsUnavailable(Exception):
    """No usable auth token could be recovered for the tenant"""


@dataclass
class TenantAuthToken:
    auth_token: str = field(repr=False)
    method: str
    requires_reencryption: bool = False


def resolve_auth_token(twilio_config: dict, tenant_id: str, cipher: CredentialCipher) -> TenantAuthToken:
    stored = twilio_config.get("auth_token")
    try:
        resolved = cipher.resolve(
            stored,
            twilio_config.get("account_sid"),
            twilio_config.get("encryption_version"),
        )
    except CredentialError as exc:
        logger.error(f"Twilio auth token decryption failed for tenant {tenant_id}: {exc}")

        override = config.get_auth_token_override(tenant_id)
        if override:
            cipher.metrics.record_method(EncryptionMethod.ENV_VAR)
            cipher.metrics.increment("fallback_decryptions")
            logger.info(f"Using environment override for Twilio auth token (tenant {tenant_id})")
            return TenantAuthToken(auth_token=override, method=ENV_OVERRIDE)

        if config.is_development() and stored:
            logger.warning(f"[Development Mode] Using raw stored auth token for tenant {tenant_id} - NOT SECURE")
            return TenantAuthToken(auth_token=stored, method=DEVELOPMENT_RAW)

        logger.error(f"[Security Block] No usable Twilio auth token for tenant {tenant_id}")
        raise TwilioCredentialsUnavailable(tenant_id) from exc

    if resolved.method == EncryptionMethod.PLAINTEXT:
        if config.is_production():
            logger.error(
                f"[SECURITY CRITICAL] Plaintext Twilio auth token in use for tenant {tenant_id}; "
                "queued for immediate encryption"
            )
        else:
            logger.warning(f"Plaintext Twilio auth token for tenant {tenant_id}; queued for encryption")
    elif resolved.method == EncryptionMethod.LEGACY:
        logger.warning(f"Legacy encryption detected for Twilio auth token (tenant {tenant_id}); scheduling re-encryption")

    return TenantAuthToken(
        auth_token=resolved.secret,
        method=resolved.method.value,
        requires_reencryption=resolved.requires_reencryption,
    )


def should_self_heal(token: TenantAuthToken) -> bool:
    return token.requires_reencryption and not config.is_development()


async def self_heal_credential(
    twilio_config: dict,
    tenant_id: str,
    store: TwilioConfigStore,
    cipher: CredentialCipher,
) -> bool:
    """
    Re-encrypt a legacy or plaintext auth token and persist it.

    Runs after the response is sent. Failures are logged for operators and
    leave the stored value untouched; the credential stays readable.
    """
    config_id = twilio_config.get("id")
    try:
        result = cipher.reencrypt_with_enhanced_security(
            twilio_config.get("auth_token"),
            twilio_config.get("account_sid"),
            twilio_config.get("encryption_version"),
        )
        saved = await store.save_auth_token(config_id, result.new_encrypted)
    except (CredentialError, PyMongoError) as exc:
        logger.error(f"[Re-encryption Warning] Failed to upgrade Twilio auth token for tenant {tenant_id}: {exc}")
        return False

    if not saved:
        logger.warning(f"Twilio configuration {config_id} disappeared before re-encryption was saved")
        return False

    logger.info(
        f"[Security Enhancement] Re-encrypted Twilio auth token for tenant {tenant_id} "
        f"from {result.from_method.value} to pbkdf2"
    )
    return True
