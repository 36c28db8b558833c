"""
Fieldhand Data Models - Pydantic models for Twilio credentials and calls
"""
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def generate_id():
    return str(uuid.uuid4())


def utc_now():
    return datetime.now(timezone.utc)


# ============= ENUMS =============

class UserRole(str, Enum):
    SUPERADMIN = "SUPERADMIN"
    OWNER = "OWNER"
    MANAGER = "MANAGER"
    DISPATCH = "DISPATCH"
    TECH = "TECH"
    VIEWONLY = "VIEWONLY"


class MaintenanceAction(str, Enum):
    CLEAR_CACHE = "clear_cache"
    RESET_METRICS = "reset_metrics"
    FORCE_MIGRATION = "force_migration"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MigrationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# ============= TWILIO CONFIGURATION =============

class TwilioConfiguration(BaseModel):
    """Stored per-tenant Twilio credentials. auth_token is an EncryptedSecret string."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=generate_id)
    tenant_id: str
    account_sid: str
    auth_token: str
    encryption_version: Optional[str] = None  # "v2" or absent for legacy/plaintext
    last_migration: Optional[datetime] = None
    is_active: bool = True
    phone_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TwilioConfigureRequest(BaseModel):
    account_sid: str = Field(..., min_length=2)
    auth_token: str = Field(..., min_length=1)
    phone_number: Optional[str] = None


class TwilioConfigurationResponse(BaseModel):
    success: bool
    configured: bool
    account_sid: str
    phone_number: Optional[str] = None
    encryption_version: str


# ============= CALLS =============

class OutboundCallRequest(BaseModel):
    to: str = Field(..., min_length=1)
    from_number: Optional[str] = Field(default=None, alias="from")

    model_config = ConfigDict(populate_by_name=True)


class CallRecord(BaseModel):
    id: str = Field(default_factory=generate_id)
    tenant_id: str
    twilio_call_sid: str
    from_number: str
    to_number: str
    direction: CallDirection = CallDirection.OUTBOUND
    status: str = "initiated"
    initiated_by: Optional[str] = None
    encryption_method: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# ============= ENCRYPTION MAINTENANCE =============

class MaintenanceRequest(BaseModel):
    action: str
    tenant_id: Optional[str] = None


class MigrationDetail(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    config_id: str
    status: MigrationStatus
    from_method: Optional[str] = None
    error: Optional[str] = None


class MigrationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    message: str
    migrated_count: int = 0
    failed_count: int = 0
    details: List[MigrationDetail] = []
