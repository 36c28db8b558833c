import os
import hashlib
from datetime import datetime, timezone

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "fieldhand_test")
os.environ.setdefault("JWT_SECRET", "test-secret-test-secret")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pymongo.errors import PyMongoError
from twilio.base.exceptions import TwilioRestException

from core.credential_metrics import CredentialHealthMetrics
from core.encryption import CredentialCipher, Pbkdf2KeyDerivation, Sha256KeyDerivation

TEST_ENCRYPTION_KEY = "unit-test-encryption-key-0123456789"
TEST_LEGACY_KEY = "unit-test-legacy-key"
ACCOUNT_SID = "AC" + "1" * 32
TENANT_ID = "tenant-1"


def legacy_encrypt(plaintext: str, salt: str = None) -> str:
    """Produce a value the way the pre-v2 writer stored it: iv:tag:ciphertext, sha256 key."""
    source = f"{TEST_LEGACY_KEY}-{salt}" if salt else TEST_LEGACY_KEY
    key = hashlib.sha256(source.encode("utf-8")).digest()
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return f"{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"


def original_legacy_encrypt(plaintext: str, salt: str) -> str:
    """A pre-v2 value written under the built-in application key."""
    key = hashlib.sha256(f"fieldlite-crm-2024-encryption-key-{salt}".encode("utf-8")).digest()
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return f"{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"


def salted_v2_encrypt(plaintext: str, salt: str, secret: str = TEST_ENCRYPTION_KEY, iterations: int = 1000) -> str:
    """A v2 value carrying its own random PBKDF2 salt: v2:key_salt:iv:tag:ciphertext."""
    key_salt = os.urandom(32)
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=key_salt, iterations=iterations)
    key = kdf.derive(f"{secret}-{salt}".encode("utf-8"))
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return f"v2:{key_salt.hex()}:{iv.hex()}:{sealed[-16:].hex()}:{sealed[:-16].hex()}"


class FakeTwilioConfigStore:
    """In-memory stand-in for services.credential_store.TwilioConfigStore"""

    def __init__(self, configs=None):
        self.configs = {c["id"]: dict(c) for c in configs or []}
        self.calls = []
        self.fail_saves_for = set()
        self.fail_call_updates = False

    async def get_for_tenant(self, tenant_id):
        for c in self.configs.values():
            if c["tenant_id"] == tenant_id:
                return dict(c)
        return None

    async def list_for_tenant(self, tenant_id):
        return [dict(c) for c in self.configs.values() if c["tenant_id"] == tenant_id]

    async def save_auth_token(self, config_id, auth_token):
        if config_id in self.fail_saves_for:
            raise PyMongoError("write concern failed")
        if config_id not in self.configs:
            return False
        self.configs[config_id].update({
            "auth_token": auth_token,
            "encryption_version": "v2",
            "last_migration": datetime.now(timezone.utc).isoformat(),
        })
        return True

    async def upsert_configuration(self, tenant_id, account_sid, auth_token, phone_number=None):
        existing = await self.get_for_tenant(tenant_id)
        doc = existing or {"id": f"cfg-{len(self.configs) + 1}", "tenant_id": tenant_id}
        doc.update({
            "account_sid": account_sid,
            "auth_token": auth_token,
            "encryption_version": "v2",
            "is_active": True,
        })
        if phone_number:
            doc["phone_number"] = phone_number
        self.configs[doc["id"]] = doc
        return dict(doc)

    async def record_call(self, call):
        self.calls.append(call)

    async def update_call(self, tenant_id, call_sid, updates):
        if self.fail_call_updates:
            raise PyMongoError("not primary")
        for call in self.calls:
            if call["tenant_id"] == tenant_id and call["twilio_call_sid"] == call_sid:
                call.update(updates)
                return True
        return False


class FakeTwilioService:
    def __init__(self):
        self.valid = True
        self.call_error = None
        self.placed = []

    def validate_credentials(self, account_sid, auth_token):
        if self.valid:
            return {"valid": True, "friendly_name": "Test Account", "error": None}
        return {"valid": False, "friendly_name": None, "error": "Invalid Twilio credentials"}

    def place_call(self, account_sid, auth_token, to_phone, from_phone, status_callback=None):
        if self.call_error is not None:
            raise self.call_error
        self.placed.append({
            "account_sid": account_sid,
            "auth_token": auth_token,
            "to": to_phone,
            "from": from_phone,
            "status_callback": status_callback,
        })
        return {"sid": "CA123", "to": to_phone, "from": from_phone, "status": "queued", "api_version": "2010-04-01"}


def twilio_error(status: int, code: int = 20003) -> TwilioRestException:
    return TwilioRestException(status, "https://api.twilio.com/2010-04-01/Accounts", msg="Authenticate", code=code)


def make_config(config_id="cfg-1", tenant_id=TENANT_ID, auth_token="", encryption_version=None, **extra):
    doc = {
        "id": config_id,
        "tenant_id": tenant_id,
        "account_sid": ACCOUNT_SID,
        "auth_token": auth_token,
        "encryption_version": encryption_version,
        "is_active": True,
        "phone_number": "+15550001111",
    }
    doc.update(extra)
    return doc


@pytest.fixture
def metrics():
    return CredentialHealthMetrics()


@pytest.fixture
def cipher(metrics):
    derivation = Pbkdf2KeyDerivation(
        lambda: TEST_ENCRYPTION_KEY, iterations=1000, cache_ttl=300, salted_iterations=1000,
    )
    built = CredentialCipher(
        metrics=metrics,
        key_derivation=derivation,
        legacy_key_derivation=Sha256KeyDerivation(lambda: TEST_LEGACY_KEY),
    )
    assert built.key_derivation is derivation
    return built


@pytest.fixture
def store():
    return FakeTwilioConfigStore()


@pytest.fixture
def twilio_stub():
    return FakeTwilioService()


@pytest.fixture
def audit_entries(monkeypatch):
    entries = []

    async def fake_audit_log(*args, **kwargs):
        entries.append((args, kwargs))

    monkeypatch.setattr("routes.encryption_health.audit_log", fake_audit_log)
    monkeypatch.setattr("routes.twilio.audit_log", fake_audit_log)
    return entries


@pytest.fixture
def make_client(cipher, store, twilio_stub, audit_entries):
    from fastapi.testclient import TestClient
    from server import app
    from core.security import limiter
    from core.auth import get_current_user
    from core.encryption import get_credential_cipher
    from services.credential_store import get_credential_store
    from services.twilio_service import get_twilio_service

    limiter.reset()

    def _make(user: dict) -> TestClient:
        app.dependency_overrides[get_current_user] = lambda: user
        app.dependency_overrides[get_credential_cipher] = lambda: cipher
        app.dependency_overrides[get_credential_store] = lambda: store
        app.dependency_overrides[get_twilio_service] = lambda: twilio_stub
        return TestClient(app)

    yield _make
    app.dependency_overrides.clear()
