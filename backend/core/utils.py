"""Shared utility functions for Fieldhand"""
from datetime import datetime
from typing import Optional

from fastapi import Request

from core.config import PUBLIC_BASE_URL


def serialize_doc(doc: dict) -> Optional[dict]:
    """Serialize a single MongoDB document for JSON response"""
    if doc is None:
        return None
    result = {k: v for k, v in doc.items() if k != '_id'}
    for key, value in result.items():
        if isinstance(value, datetime):
            result[key] = value.isoformat()
    return result


def redact_credentials(doc: dict) -> Optional[dict]:
    """Serialize a Twilio configuration without ever exposing the stored token"""
    result = serialize_doc(doc)
    if result and "auth_token" in result:
        result["auth_token"] = "********" if result["auth_token"] else None
    return result


def normalize_phone_e164(phone: str) -> str:
    """
    Normalize a phone number to E.164 format (+1XXXXXXXXXX).
    Assumes US numbers if no country code is provided.
    """
    if not phone:
        return ""
    digits = ''.join(c for c in phone if c.isdigit())
    if phone.startswith('+') and not phone.startswith('+1'):
        return '+' + digits
    if len(digits) == 10:
        digits = '1' + digits
    return '+' + digits if digits else ""


def public_base_url(request: Request) -> str:
    """Base URL Twilio should call back on"""
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("host", request.url.netloc)
    return f"{proto}://{host}"
