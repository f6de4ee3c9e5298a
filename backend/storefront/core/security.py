"""Security dependencies for the gateway relay and API access logging"""
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import Header, HTTPException, Request

from storefront.core.config import settings
from storefront.core.errors import NotAuthorized

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_gateway(
    request: Request,
    x_gateway_token: Optional[str] = Header(None, alias="X-Gateway-Token")
) -> None:
    """Dependency: the caller must present the chat gateway's shared secret"""
    expected = settings.GATEWAY_SHARED_SECRET
    if not expected:
        security_logger.error("GATEWAY_SHARED_SECRET not configured - rejecting command relay")
        raise HTTPException(503, "Command relay not configured")

    if not x_gateway_token or not hmac.compare_digest(x_gateway_token, expected):
        security_logger.warning(
            f"Gateway token validation failed - "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(401, "Invalid gateway token")


def ensure_allowed_guild(guild_id: Optional[str]) -> None:
    """Refuse any guild other than the configured tenant"""
    if not guild_id or guild_id != settings.ALLOWED_GUILD_ID:
        security_logger.warning(f"Command from disallowed guild {guild_id}")
        raise NotAuthorized("This bot is locked to one server. Not this one.")


def require_admin(actor) -> None:
    if not actor.is_admin:
        raise NotAuthorized("Administrator permission required.")


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
