"""AT Protocol handle, DID and authorization server discovery.

Resolves a handle to its DID through the service's identity resolution
endpoint, reads the DID document to locate the account's PDS, and discovers
the OAuth authorization server endpoints for that PDS.
"""

import asyncio
import logging
from enum import IntEnum
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession
from pydantic import BaseModel

from social.skyscraper.atproto.errors import DiscoveryError
from social.skyscraper.atproto.pds import (
    oauth_authorization_server,
    oauth_protected_resource,
)
from social.skyscraper.model.oauth import ServerEndpoints

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """DID document facts for a subject: DID, handle and PDS endpoint."""

    did: str
    handle: str
    pds: str


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if len(subject) == 0:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


def handle_predicate(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("at://")


def pds_predicate(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and isinstance(value.get("serviceEndpoint", None), str)
    )


def _list_member(body: Dict[str, Any], name: str) -> List[Any]:
    value = body.get(name, None)
    return value if isinstance(value, list) else []


def subject_from_did_document(did: str, body: Any) -> Optional[ResolvedSubject]:
    if not isinstance(body, dict):
        return None
    handle = next(filter(handle_predicate, _list_member(body, "alsoKnownAs")), None)
    pds = next(filter(pds_predicate, _list_member(body, "service")), None)
    if handle is not None and pds is not None:
        return ResolvedSubject(
            did=did,
            handle=handle.removeprefix("at://"),
            pds=pds.get("serviceEndpoint"),
        )
    return None


async def resolve_handle(session: ClientSession, service: str, handle: str) -> str:
    """Resolve a handle to its DID with ``com.atproto.identity.resolveHandle``.

    Raises:
        DiscoveryError: On network failure, non-2xx status or a missing DID.
    """
    url = f"{service.rstrip('/')}/xrpc/com.atproto.identity.resolveHandle"
    try:
        async with session.get(url, params={"handle": handle}) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise DiscoveryError(
                    f"Unable to resolve handle {handle}: HTTP {resp.status}"
                )
            body = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise DiscoveryError(f"Unable to resolve handle {handle}: {e}") from e

    did = body.get("did", None) if isinstance(body, dict) else None
    if not isinstance(did, str) or not did.startswith("did:"):
        raise DiscoveryError(f"No DID returned for handle {handle}")
    return did


async def resolve_did_method_plc(
    plc_directory: str, session: ClientSession, did: str
) -> Optional[ResolvedSubject]:
    async with session.get(f"{plc_directory.rstrip('/')}/{did}") as resp:
        if resp.status != 200:
            return None
        return subject_from_did_document(did, await resp.json(content_type=None))


async def resolve_did_method_web(
    session: ClientSession, did: str
) -> Optional[ResolvedSubject]:
    """Resolve did:web DID to complete subject information.

    Constructs did.json URL from DID and extracts handle and PDS.
    """
    parts = did.removeprefix("did:web:").split(":")
    if len(parts) == 0 or len(parts[0]) == 0:
        return None

    if len(parts) == 1:
        parts.append(".well-known")

    url = "https://{inner}/did.json".format(inner="/".join(parts))

    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        return subject_from_did_document(did, await resp.json(content_type=None))


async def resolve_did(
    session: ClientSession, plc_directory: str, did: str
) -> Optional[ResolvedSubject]:
    if did.startswith("did:plc:"):
        return await resolve_did_method_plc(plc_directory, session, did)
    elif did.startswith("did:web:"):
        return await resolve_did_method_web(session, did)
    return None


class ServerDiscovery:
    """Resolves a handle to the endpoints needed for an OAuth login.

    Handle and authorization server metadata failures are fatal to the attempt.
    DID document and protected resource lookups are best effort: when they fail
    the configured service is used as the authorization server.
    """

    def __init__(
        self, http_session: ClientSession, service: str, plc_directory: str
    ) -> None:
        self._http_session = http_session
        self._service = service.rstrip("/")
        self._plc_directory = plc_directory

    async def discover(self, handle: str) -> ServerEndpoints:
        """Resolve ``handle`` to its DID, PDS and OAuth endpoints.

        Raises:
            DiscoveryError: On network failure, non-2xx responses or missing
                required metadata fields.
        """
        parsed_subject = parse_input(handle)
        if parsed_subject is None:
            raise DiscoveryError("A handle is required")

        if parsed_subject.subject_type == SubjectType.hostname:
            did = await resolve_handle(
                self._http_session, self._service, parsed_subject.subject
            )
        else:
            did = parsed_subject.subject

        resolved = await self._resolve_did_document(did)
        resolved_handle = parsed_subject.subject
        pds: Optional[str] = None
        if resolved is not None:
            pds = resolved.pds
            if parsed_subject.subject_type != SubjectType.hostname:
                resolved_handle = resolved.handle

        authorization_server = await self._authorization_server_for(pds)
        metadata = await self._authorization_server_metadata(authorization_server)

        authorization_endpoint = metadata.get("authorization_endpoint", None)
        token_endpoint = metadata.get("token_endpoint", None)
        if not authorization_endpoint or not token_endpoint:
            raise DiscoveryError(
                f"Authorization server {authorization_server} metadata is missing "
                "authorization_endpoint or token_endpoint"
            )

        endpoints = ServerEndpoints(
            did=did,
            handle=resolved_handle,
            pds=pds,
            issuer=metadata.get("issuer", None) or authorization_server,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            par_endpoint=metadata.get("pushed_authorization_request_endpoint", None),
        )
        logger.info(
            "Discovered authorization server %s for %s (%s)",
            endpoints.issuer,
            endpoints.handle,
            endpoints.did,
        )
        return endpoints

    async def _resolve_did_document(self, did: str) -> Optional[ResolvedSubject]:
        try:
            resolved = await resolve_did(self._http_session, self._plc_directory, did)
        except (ClientError, asyncio.TimeoutError, ValueError):
            logger.warning("Unable to resolve DID document for %s", did, exc_info=True)
            return None
        if resolved is None:
            logger.warning("No PDS found in DID document for %s", did)
        return resolved

    async def _authorization_server_for(self, pds: Optional[str]) -> str:
        if pds is None:
            return self._service

        try:
            protected_resource = await oauth_protected_resource(self._http_session, pds)
        except (ClientError, asyncio.TimeoutError, ValueError):
            logger.warning(
                "Unable to fetch protected resource metadata from %s", pds, exc_info=True
            )
            return self._service

        if isinstance(protected_resource, dict):
            first_authorization_server = next(
                iter(protected_resource.get("authorization_servers", None) or []), None
            )
            if isinstance(first_authorization_server, str):
                return first_authorization_server.rstrip("/")

        return self._service

    async def _authorization_server_metadata(
        self, authorization_server: str
    ) -> Dict[str, Any]:
        try:
            metadata = await oauth_authorization_server(
                self._http_session, authorization_server
            )
        except (ClientError, asyncio.TimeoutError, ValueError) as e:
            raise DiscoveryError(
                f"Unable to fetch authorization server metadata from "
                f"{authorization_server}: {e}"
            ) from e

        if not isinstance(metadata, dict):
            raise DiscoveryError(
                f"No authorization server metadata found at {authorization_server}"
            )
        return metadata
