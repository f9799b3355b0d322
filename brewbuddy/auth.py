"""
Token authentication with one-time device binding.

A token is bound to the first device that authenticates with it. Every
later request must present the same device id or it is rejected.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

from fastapi import Depends, Request

from brewbuddy.db import DbClient, DeviceAlreadyBoundError, UserRecord
from brewbuddy.dependencies import get_db_client
from brewbuddy.errors import (
    AuthenticationError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
)

logger = logging.getLogger(__name__)

DEVICE_HEADER = "x-device-id"
USER_AGENT_MAX_LENGTH = 100

# Checked in order; the first substring found in the user agent wins.
OS_MARKERS = (
    ("Mac", "macOS"),
    ("Windows", "Windows"),
    ("Linux", "Linux"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
)


@dataclass(frozen=True)
class Credentials:
    token: Optional[str] = None
    device_id: Optional[str] = None


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_present(*values: Any) -> Optional[str]:
    for value in values:
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return None


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value


def extract_credentials(
    headers: Mapping[str, str], body: Any, query: Mapping[str, str]
) -> Credentials:
    """Resolve token and device id: header, then JSON body, then query string.

    ``headers`` must be case-insensitive (Starlette ``Headers``) or use
    lower-case keys.
    """
    body = body if isinstance(body, dict) else {}
    token = _first_present(
        _bearer_token(headers.get("authorization")),
        body.get("token"),
        query.get("token"),
    )
    device_id = _first_present(
        headers.get(DEVICE_HEADER),
        body.get("deviceId"),
        query.get("deviceId"),
    )
    return Credentials(token=token, device_id=device_id)


def device_info(user_agent: Optional[str]) -> str:
    """Snapshot of client metadata stored on first bind. Never used for auth."""
    user_agent = user_agent or "unknown"
    platform = "mobile" if "Mobile" in user_agent else "desktop"
    os_name = next(
        (name for marker, name in OS_MARKERS if marker in user_agent), "unknown"
    )
    return json.dumps(
        {
            "platform": platform,
            "os": os_name,
            "userAgent": user_agent[:USER_AGENT_MAX_LENGTH],
        }
    )


def authenticate(
    db: DbClient, credentials: Credentials, user_agent: Optional[str] = None
) -> UserRecord:
    """Return the user owning the token, binding the device on first use."""
    if not credentials.token:
        raise BadRequestError("Token required")
    if not credentials.device_id:
        raise BadRequestError("Device ID required")

    user = db.get_user_by_token(credentials.token)
    if user is None:
        raise AuthenticationError("Invalid token")

    if user.device_id is None:
        try:
            bound = db.bind_device(
                user.id, credentials.device_id, device_info(user_agent)
            )
        except DeviceAlreadyBoundError:
            raise ConflictError(
                "This device is already bound to another account"
            ) from None
        if bound:
            logger.info(
                "Device bound: user %s -> device %s...",
                user.username,
                credentials.device_id[:8],
            )
            user = replace(user, device_id=credentials.device_id)
        else:
            # Another request bound the token first; check against its device.
            user = db.get_user_by_token(credentials.token)
            if user is None:
                raise AuthenticationError("Invalid token")

    if user.device_id != credentials.device_id:
        logger.warning(
            "Rejected token for user %s from unbound device %s...",
            user.username,
            credentials.device_id[:8],
        )
        raise AuthorizationError("This token is already bound to another device")
    return user


async def read_credentials(request: Request) -> Credentials:
    body: Any = {}
    raw = await request.body()
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = {}
    return extract_credentials(request.headers, body, request.query_params)


def get_current_user(
    request: Request,
    credentials: Credentials = Depends(read_credentials),
    db: DbClient = Depends(get_db_client),
) -> UserRecord:
    return authenticate(db, credentials, request.headers.get("user-agent"))
