"""
Fieldhand Backend - Main FastAPI Application
Multi-tenant field service CRM: Twilio credential vault and outbound calling
"""
from fastapi import FastAPI, APIRouter
from datetime import datetime, timezone
import logging

from core.app_setup import configure_cors, configure_rate_limiting
from core.config import validate_security_settings
from core.database import client, ensure_indexes
from core.encryption import credential_cipher
from core.lifecycle import shutdown_resources, startup_resources
from routes import encryption_health_router, twilio_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Security validation (fail-fast in production)
validate_security_settings()

# Create the main app
app = FastAPI(title="Fieldhand API", version="1.0.0")

# Create routers
api_router = APIRouter(prefix="/api")
v1_router = APIRouter(prefix="/v1")


# ============= HEALTH CHECK =============

@api_router.get("/")
async def root():
    return {"message": "Fieldhand API v1.0.0", "status": "healthy"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Include routers
v1_router.include_router(encryption_health_router)
v1_router.include_router(twilio_router)

api_router.include_router(v1_router)
app.include_router(api_router)

configure_cors(app)
configure_rate_limiting(app)


@app.on_event("startup")
async def startup_event():
    await startup_resources(ensure_indexes)
    logger.info("Fieldhand API started")


@app.on_event("shutdown")
async def shutdown_db_client():
    await shutdown_resources(client, credential_cipher)
