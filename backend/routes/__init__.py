# Routes package
from .encryption_health import router as encryption_health_router
from .twilio import router as twilio_router

__all__ = ['encryption_health_router', 'twilio_router']
