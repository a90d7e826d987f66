"""OAuth flow data models for AT Protocol authentication.

Provides the transient state of one authorization code flow: the PKCE secret,
the discovered server endpoints, the flow correlation state and the token
response. None of these are persisted.
"""

import base64
import hashlib
import secrets
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID

from social.skyscraper.atproto.jwt import KeyMaterial, ProofSigner


def pkce_challenge(verifier: str) -> str:
    """Derive the S256 PKCE challenge for a verifier."""
    hashed = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(hashed).decode("ascii").rstrip("=")


class PkceSecret(BaseModel):
    """PKCE verifier and its S256 challenge (RFC 7636).

    The verifier carries 32 bytes of entropy and is only transmitted in the
    token exchange.
    """

    model_config = ConfigDict(frozen=True)

    verifier: str
    challenge: str

    @classmethod
    def generate(cls) -> "PkceSecret":
        verifier = secrets.token_urlsafe(32)
        return cls(verifier=verifier, challenge=pkce_challenge(verifier))


class ServerEndpoints(BaseModel):
    """Resolved identity and authorization server endpoints for a handle."""

    did: str
    handle: str
    pds: Optional[str] = None
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    par_endpoint: Optional[str] = None


class FlowState(BaseModel):
    """Correlates one authorization code flow from start to token exchange.

    Owns the attempt's DPoP key and PKCE secret. Once the code has been
    exchanged the flow is consumed and must not be used again.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    attempt_id: str = Field(default_factory=lambda: str(ULID()))
    state: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    endpoints: ServerEndpoints
    client_id: str
    redirect_uri: str
    scope: str
    key_material: KeyMaterial
    signer: ProofSigner
    pkce: PkceSecret = Field(default_factory=PkceSecret.generate)
    dpop_nonce: Optional[str] = None
    consumed: bool = False

    @classmethod
    def create(
        cls,
        endpoints: ServerEndpoints,
        client_id: str,
        redirect_uri: str,
        scope: str,
        state: Optional[str] = None,
    ) -> "FlowState":
        key_material = KeyMaterial.generate()
        return cls(
            state=state or secrets.token_urlsafe(32),
            endpoints=endpoints,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            key_material=key_material,
            signer=ProofSigner(key_material),
        )


class AuthorizationCode(BaseModel):
    """One-time code delivered by the authorization redirect."""

    model_config = ConfigDict(frozen=True)

    code: str
    state: str
    issuer: Optional[str] = None


class TokenResult(BaseModel):
    """Token endpoint response for the authorization code grant."""

    access_token: str
    refresh_token: Optional[str] = None
    did: str
    dpop_nonce: Optional[str] = None
    scope: Optional[str] = None
    expires_in: Optional[int] = None
