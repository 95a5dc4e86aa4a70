"""
Security module for ragbot webhook authentication.
Validates the X-Twilio-Signature header on inbound WhatsApp webhooks.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Twilio-Signature"


def fingerprint(secret: str) -> str:
    """Short SHA-256 fingerprint of a secret for logging (never log the raw value)."""
    return hashlib.sha256(secret.encode()).hexdigest()[:8]


def get_client_ip(request: Request) -> str:
    """Extract real client IP from request, handling proxies and load balancers."""
    forwarded_for = request.headers.get('X-Forwarded-For')
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, use the first one
        return forwarded_for.split(',')[0].strip()

    real_ip = request.headers.get('X-Real-IP')
    if real_ip:
        return real_ip.strip()

    return str(request.client.host) if request.client else "unknown"


def compute_twilio_signature(url: str, params: Mapping[str, Any], auth_token: str) -> str:
    """
    Compute the signature Twilio sends for a webhook request.

    Twilio signs the full request URL followed by every POST parameter
    (sorted by name) as name+value, using HMAC-SHA1 keyed with the auth token.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), payload.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def log_security_event(event_type: str, ip_address: str, details: Dict[str, Any], severity: str = "WARNING") -> None:
    """Log security events with structured data for monitoring and analysis."""
    log_entry = {
        "event": event_type,
        "ip": ip_address,
        "severity": severity,
        **details
    }

    if severity == "ERROR":
        logger.error(f"[SECURITY] {log_entry}")
    elif severity == "INFO":
        logger.info(f"[SECURITY] {log_entry}")
    else:
        logger.warning(f"[SECURITY] {log_entry}")


def validate_twilio_signature(request: Request, params: Mapping[str, Any], auth_token: Optional[str] = None, url: Optional[str] = None) -> bool:
    """
    Validate the Twilio signature of a webhook request.

    Args:
        request: FastAPI request object
        params: Parsed form parameters of the request
        auth_token: Twilio auth token; defaults to config.TWILIO_AUTH_TOKEN
        url: URL Twilio called; defaults to PUBLIC_WEBHOOK_URL or the request URL

    Returns:
        True if the signature is valid

    Raises:
        HTTPException: 403 if the signature is missing or invalid
    """
    client_ip = get_client_ip(request)
    auth_token = auth_token if auth_token is not None else config.TWILIO_AUTH_TOKEN
    url = url or config.PUBLIC_WEBHOOK_URL or str(request.url)

    provided = request.headers.get(SIGNATURE_HEADER)
    if not provided:
        log_security_event(
            "auth_failure_missing_signature",
            client_ip,
            {"reason": "Missing X-Twilio-Signature header", "user_agent": request.headers.get('User-Agent', 'unknown')},
            severity="ERROR"
        )
        raise HTTPException(status_code=403, detail="Missing signature")

    expected = compute_twilio_signature(url, params, auth_token or "")
    if not hmac.compare_digest(provided, expected):
        log_security_event(
            "auth_failure_invalid_signature",
            client_ip,
            {
                "reason": "Invalid X-Twilio-Signature",
                "url": url,
                "signature_hash": fingerprint(provided),
                "user_agent": request.headers.get('User-Agent', 'unknown')
            },
            severity="ERROR"
        )
        raise HTTPException(status_code=403, detail="Invalid signature")

    log_security_event("auth_success", client_ip, {"reason": "Valid Twilio signature"}, severity="INFO")
    return True
