"""
Shared test configuration and fixtures.

Provides an in-process fake AT Protocol service (identity resolution, PLC
directory, protected resource and authorization server metadata, PAR, token
and app password session endpoints) built with aiohttp, plus settings and
HTTP session fixtures pointed at it.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from social.skyscraper.app.config import Settings


def decode_segment(segment: str) -> Dict[str, Any]:
    """Decode one base64url JWT segment into a dict."""
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


@dataclass
class RecordedRequest:
    endpoint: str
    form: Dict[str, str]
    headers: Dict[str, str]

    @property
    def dpop_claims(self) -> Dict[str, Any]:
        return decode_segment(self.headers["DPoP"].split(".")[1])


class FakeAuthServer:
    """Programmable stand-in for an entryway, PDS and authorization server."""

    def __init__(self) -> None:
        self.base_url = ""
        self.handles: Dict[str, str] = {"alice.test": "did:plc:xyz"}
        self.did_documents: Dict[str, Any] = {}
        self.protected_resource: Optional[Dict[str, Any]] = None
        self.metadata: Optional[Dict[str, Any]] = None
        self.metadata_status = 200
        self.par_response: Tuple[int, Dict[str, Any]] = (
            201,
            {"request_uri": "urn:ietf:params:oauth:request_uri:req-1", "expires_in": 60},
        )
        self.token_response: Optional[Tuple[int, Dict[str, Any]]] = None
        self.dpop_nonce: Optional[str] = None
        self.expected_code = "auth-code"
        self.app_passwords: Dict[str, str] = {"alice.test": "app-pass-1234"}
        self.refresh_tokens: Dict[str, str] = {}
        self.refresh_handle: Optional[str] = None
        self.refresh_calls = 0
        self.requests: List[RecordedRequest] = []
        self._last_challenge: Optional[str] = None

    def configure(self, base_url: str) -> None:
        self.base_url = base_url
        self.did_documents = {
            "did:plc:xyz": {
                "id": "did:plc:xyz",
                "alsoKnownAs": ["at://alice.test"],
                "service": [
                    {
                        "id": "#atproto_pds",
                        "type": "AtprotoPersonalDataServer",
                        "serviceEndpoint": base_url,
                    }
                ],
            }
        }
        self.protected_resource = {
            "resource": base_url,
            "authorization_servers": [base_url],
        }
        self.metadata = {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/oauth/authorize",
            "token_endpoint": f"{base_url}/oauth/token",
            "pushed_authorization_request_endpoint": f"{base_url}/oauth/par",
        }

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(
            "/xrpc/com.atproto.identity.resolveHandle", self.handle_resolve_handle
        )
        app.router.add_get("/plc/{did}", self.handle_plc)
        app.router.add_get(
            "/.well-known/oauth-protected-resource", self.handle_protected_resource
        )
        app.router.add_get(
            "/.well-known/oauth-authorization-server", self.handle_metadata
        )
        app.router.add_post("/oauth/par", self.handle_par)
        app.router.add_post("/oauth/token", self.handle_token)
        app.router.add_post(
            "/xrpc/com.atproto.server.createSession", self.handle_create_session
        )
        app.router.add_post(
            "/xrpc/com.atproto.server.refreshSession", self.handle_refresh_session
        )
        return app

    def requests_to(self, endpoint: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.endpoint == endpoint]

    def _session_body(self, did: str, handle: str, generation: int) -> Dict[str, Any]:
        refresh_jwt = f"refresh-{generation}"
        self.refresh_tokens[refresh_jwt] = did
        return {
            "did": did,
            "handle": handle,
            "accessJwt": f"access-{generation}",
            "refreshJwt": refresh_jwt,
            "didDoc": self.did_documents.get(did),
            "active": True,
        }

    async def handle_resolve_handle(self, request: web.Request) -> web.Response:
        did = self.handles.get(request.query.get("handle", ""))
        if did is None:
            return web.json_response(
                {"error": "InvalidRequest", "message": "Unable to resolve handle"},
                status=400,
            )
        return web.json_response({"did": did})

    async def handle_plc(self, request: web.Request) -> web.Response:
        document = self.did_documents.get(request.match_info["did"])
        if document is None:
            return web.json_response({"message": "DID not registered"}, status=404)
        return web.json_response(document)

    async def handle_protected_resource(self, request: web.Request) -> web.Response:
        if self.protected_resource is None:
            return web.Response(status=404)
        return web.json_response(self.protected_resource)

    async def handle_metadata(self, request: web.Request) -> web.Response:
        if self.metadata_status != 200:
            return web.Response(status=self.metadata_status, text="unavailable")
        return web.json_response(self.metadata)

    def _nonce_headers(self) -> Dict[str, str]:
        return {"DPoP-Nonce": self.dpop_nonce} if self.dpop_nonce else {}

    def _nonce_rejection(self, recorded: RecordedRequest) -> Optional[web.Response]:
        if self.dpop_nonce is None:
            return None
        if recorded.dpop_claims.get("nonce") == self.dpop_nonce:
            return None
        return web.json_response(
            {"error": "use_dpop_nonce", "error_description": "nonce required"},
            status=400,
            headers=self._nonce_headers(),
        )

    async def _record(self, endpoint: str, request: web.Request) -> RecordedRequest:
        form = await request.post()
        recorded = RecordedRequest(
            endpoint=endpoint,
            form={k: str(v) for k, v in form.items()},
            headers=dict(request.headers),
        )
        self.requests.append(recorded)
        return recorded

    async def handle_par(self, request: web.Request) -> web.Response:
        recorded = await self._record("par", request)
        rejection = self._nonce_rejection(recorded)
        if rejection is not None:
            return rejection
        self._last_challenge = recorded.form.get("code_challenge")
        status, body = self.par_response
        return web.json_response(body, status=status, headers=self._nonce_headers())

    async def handle_token(self, request: web.Request) -> web.Response:
        recorded = await self._record("token", request)
        rejection = self._nonce_rejection(recorded)
        if rejection is not None:
            return rejection

        if self.token_response is not None:
            status, body = self.token_response
            return web.json_response(body, status=status, headers=self._nonce_headers())

        verifier = recorded.form.get("code_verifier", "")
        challenge = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .decode()
            .rstrip("=")
        )
        if (
            recorded.form.get("code") != self.expected_code
            or challenge != self._last_challenge
        ):
            return web.json_response({"error": "invalid_grant"}, status=400)

        return web.json_response(
            {
                "access_token": "oauth-access",
                "refresh_token": "oauth-refresh",
                "token_type": "DPoP",
                "sub": "did:plc:xyz",
                "scope": "atproto transition:generic",
                "expires_in": 3600,
            },
            headers=self._nonce_headers(),
        )

    async def handle_create_session(self, request: web.Request) -> web.Response:
        body = await request.json()
        identifier = body.get("identifier")
        if self.app_passwords.get(identifier) != body.get("password"):
            return web.json_response(
                {
                    "error": "AuthenticationRequired",
                    "message": "Invalid identifier or password",
                },
                status=401,
            )
        did = self.handles[identifier]
        return web.json_response(self._session_body(did, identifier, 1))

    async def handle_refresh_session(self, request: web.Request) -> web.Response:
        self.refresh_calls += 1
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        did = self.refresh_tokens.pop(token, None)
        if did is None:
            return web.json_response(
                {"error": "ExpiredToken", "message": "Token has expired"}, status=400
            )
        generation = int(token.removeprefix("refresh-")) + 1
        session = self._session_body(did, "alice.test", generation)
        if self.refresh_handle is None:
            session.pop("handle")
        else:
            session["handle"] = self.refresh_handle
        return web.json_response(session)


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Keep settings away from the real ~/.config/skyscraper."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("SKYSCRAPER_CONFIG_DIR", str(config_dir))
    return config_dir


@pytest_asyncio.fixture
async def auth_server():
    """Run a FakeAuthServer on a local port for the duration of a test."""
    fake = FakeAuthServer()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.configure(str(server.make_url("/")).rstrip("/"))
    try:
        yield fake
    finally:
        await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=10)
    ) as session:
        yield session


@pytest.fixture
def settings(auth_server, isolated_config_dir):
    return Settings(
        service=auth_server.base_url,
        plc_directory=f"{auth_server.base_url}/plc",
        config_dir=isolated_config_dir,
        open_browser=False,
        callback_timeout=5.0,
    )
