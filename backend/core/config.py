"""Centralized environment configuration for Fieldhand"""
import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

# Runtime environment
ENVIRONMENT: str = os.environ.get('ENVIRONMENT', 'development').lower()

# MongoDB
MONGO_URL: str = os.environ['MONGO_URL']
DB_NAME: str = os.environ['DB_NAME']

# JWT (required)
JWT_SECRET: str = os.environ.get('JWT_SECRET', '')
JWT_ALGORITHM: str = "HS256"
JWT_EXPIRATION_HOURS: int = 24

# Credential encryption
# Key material for current (v2) ciphertexts. Required in production.
ENCRYPTION_KEY: str = os.environ.get('ENCRYPTION_KEY', '').strip()
# Secret that legacy ciphertexts were written under before ENCRYPTION_KEY existed
DEFAULT_APP_KEY: str = 'fieldlite-crm-2024-encryption-key'
LEGACY_ENCRYPTION_KEY: str = os.environ.get('LEGACY_ENCRYPTION_KEY', DEFAULT_APP_KEY)
PBKDF2_ITERATIONS: int = int(os.environ.get('PBKDF2_ITERATIONS', '100000'))
KEY_CACHE_TTL_SECONDS: int = int(os.environ.get('KEY_CACHE_TTL_SECONDS', '300'))

# Twilio
TWILIO_AUTH_TOKEN_OVERRIDE_PREFIX: str = 'TWILIO_AUTH_TOKEN_'
PUBLIC_BASE_URL: str = os.environ.get('PUBLIC_BASE_URL', '').rstrip('/')

# App
def _default_cors() -> str:
    return 'http://localhost:3000,http://localhost:5173,http://localhost'

CORS_ORIGINS: list[str] = [origin.strip() for origin in os.environ.get('CORS_ORIGINS', _default_cors()).split(',') if origin.strip()]


def is_production() -> bool:
    return ENVIRONMENT in {"prod", "production"}


def is_development() -> bool:
    return ENVIRONMENT in {"dev", "development"}


def get_encryption_key() -> str:
    """Base secret for current-format keys, falling back to the fixed app key outside production."""
    return ENCRYPTION_KEY or DEFAULT_APP_KEY


def get_legacy_encryption_key() -> str:
    return LEGACY_ENCRYPTION_KEY


def get_auth_token_override(tenant_id: str) -> str:
    """Operator-supplied auth token for a tenant whose stored credential cannot be read."""
    return os.environ.get(f"{TWILIO_AUTH_TOKEN_OVERRIDE_PREFIX}{tenant_id}", "").strip()


def get_env_reference(name: str) -> str:
    """Value of an environment variable named by a stored ${VAR_NAME} credential."""
    return os.environ.get(name, "").strip()


def validate_security_settings() -> None:
    """Fail fast for insecure runtime defaults."""
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set")

    if JWT_SECRET == 'default-secret-change-me' or len(JWT_SECRET) < 16:
        raise RuntimeError("JWT_SECRET is too weak; set a stronger secret")

    if not CORS_ORIGINS or '*' in CORS_ORIGINS:
        raise RuntimeError("CORS_ORIGINS must be explicit and cannot include '*'")

    if is_production() and len(JWT_SECRET) < 32:
        raise RuntimeError("In production, JWT_SECRET must be at least 32 chars long")

    if is_production() and not ENCRYPTION_KEY:
        raise RuntimeError("In production, ENCRYPTION_KEY must be set")

    if ENCRYPTION_KEY and ENCRYPTION_KEY == DEFAULT_APP_KEY:
        raise RuntimeError("ENCRYPTION_KEY must not reuse the built-in application key")

    if PBKDF2_ITERATIONS < 10000:
        raise RuntimeError("PBKDF2_ITERATIONS is too low; use at least 10000")
