"""App password sessions against an AT Protocol PDS.

Creates sessions with ``com.atproto.server.createSession`` and renews stored
sessions with ``com.atproto.server.refreshSession``. Only the server-issued
access and refresh tokens are returned for storage, never the password.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession

from social.skyscraper.atproto.errors import AppPasswordError, SessionRefreshError
from social.skyscraper.model.session import SessionRecord
from social.skyscraper.resolve.handle import pds_predicate

logger = logging.getLogger(__name__)


def pds_from_did_document(did_doc: Any) -> Optional[str]:
    if not isinstance(did_doc, dict):
        return None
    services = did_doc.get("service", None)
    if not isinstance(services, list):
        return None
    pds = next(filter(pds_predicate, services), None)
    if pds is None:
        return None
    return pds.get("serviceEndpoint")


def session_record_from_body(
    body: Dict[str, Any], fallback_pds: Optional[str]
) -> Optional[SessionRecord]:
    access_jwt = body.get("accessJwt", None)
    refresh_jwt = body.get("refreshJwt", None)
    did = body.get("did", None)
    handle = body.get("handle", None)
    if not access_jwt or not refresh_jwt or not did or not handle:
        return None

    return SessionRecord(
        did=did,
        handle=handle,
        access_jwt=access_jwt,
        refresh_jwt=refresh_jwt,
        pds_endpoint=pds_from_did_document(body.get("didDoc", None)) or fallback_pds,
    )


async def create_session(
    http_session: ClientSession,
    service: str,
    identifier: str,
    password: str,
) -> SessionRecord:
    """Log in with a handle (or DID) and app password.

    Raises:
        AppPasswordError: If the server rejects the credentials or returns an
            incomplete session.
    """
    create_session_url = f"{service.rstrip('/')}/xrpc/com.atproto.server.createSession"
    create_session_body = {"identifier": identifier, "password": password}

    try:
        async with http_session.post(
            create_session_url, json=create_session_body
        ) as resp:
            body = await resp.json(content_type=None)
            if resp.status != 200:
                message = body.get("message", None) if isinstance(body, dict) else None
                raise AppPasswordError(
                    f"Login failed: {message or f'HTTP {resp.status}'}"
                )
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise AppPasswordError(f"Login request failed: {e}") from e

    record = (
        session_record_from_body(body, service.rstrip("/"))
        if isinstance(body, dict)
        else None
    )
    if record is None:
        raise AppPasswordError("Incomplete session returned by server")
    return record


async def refresh_session(
    http_session: ClientSession,
    service: str,
    current: SessionRecord,
) -> SessionRecord:
    """Renew a stored session using its refresh token.

    The refreshed session must belong to the same DID as the stored one.

    Raises:
        SessionRefreshError: If the refresh token is rejected, the response is
            incomplete or the account does not match.
    """
    if not current.refresh_jwt:
        raise SessionRefreshError("Stored session has no refresh token")

    refresh_url = f"{service.rstrip('/')}/xrpc/com.atproto.server.refreshSession"
    headers = {"Authorization": f"Bearer {current.refresh_jwt}"}

    try:
        async with http_session.post(refresh_url, headers=headers) as resp:
            if resp.status != 200:
                raise SessionRefreshError(f"Failed to refresh session: {resp.status}")
            body = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise SessionRefreshError(f"Refresh request failed: {e}") from e

    if not isinstance(body, dict):
        raise SessionRefreshError("Invalid refresh response")

    if body.get("active", True) is False:
        raise SessionRefreshError("Account is not active")

    record = session_record_from_body(
        {**body, "handle": current.handle}, current.pds_endpoint
    )
    if record is None:
        raise SessionRefreshError("Incomplete session returned by server")

    if record.did != current.did:
        raise SessionRefreshError("Refreshed session belongs to a different account")

    return record
