"""
JWT and DPoP utilities for AT Protocol authentication.

Provides the per-attempt DPoP key pair and the signer that produces DPoP proof
JWTs as specified in RFC 9449 (OAuth 2.0 Demonstrating Proof of Possession).
"""

import hashlib
import json
import time
import uuid
from typing import Any, Callable, Dict, Optional

from jwcrypto import jwk, jwt
from jwcrypto.common import base64url_encode

from social.skyscraper.atproto.errors import KeyGenerationError


class KeyMaterial:
    """ECDSA P-256 key pair used to bind tokens to one authentication attempt.

    The key is created once per attempt and never persisted. The public part is
    exposed as a minimal JWK (``kty``, ``crv``, ``x``, ``y``) suitable for
    embedding in DPoP proof headers.
    """

    def __init__(self, key: jwk.JWK) -> None:
        public = key.export_public(as_dict=True)
        if public.get("kty") != "EC" or public.get("crv") != "P-256":
            raise KeyGenerationError("DPoP keys must be EC P-256")
        self._key = key
        self._public_jwk: Dict[str, str] = {
            "kty": public["kty"],
            "crv": public["crv"],
            "x": public["x"],
            "y": public["y"],
        }

    @classmethod
    def generate(cls) -> "KeyMaterial":
        """Generate a new DPoP key pair.

        Raises:
            KeyGenerationError: If the underlying library fails to produce a key.
        """
        try:
            key = jwk.JWK.generate(kty="EC", crv="P-256")
        except Exception as e:
            raise KeyGenerationError(f"Unable to generate DPoP key: {e}") from e
        return cls(key)

    @property
    def key(self) -> jwk.JWK:
        return self._key

    @property
    def public_jwk(self) -> Dict[str, str]:
        # Callers embed this in headers, hand out a copy.
        return dict(self._public_jwk)

    def canonical_jwk(self) -> str:
        """Serialize the required public members in RFC 7638 canonical form.

        Members are ordered ``crv``, ``kty``, ``x``, ``y`` and serialized without
        whitespace.
        """
        return json.dumps(
            {
                "crv": self._public_jwk["crv"],
                "kty": self._public_jwk["kty"],
                "x": self._public_jwk["x"],
                "y": self._public_jwk["y"],
            },
            separators=(",", ":"),
        )

    def thumbprint(self) -> str:
        """Return the base64url SHA-256 JWK thumbprint of the public key."""
        digest = hashlib.sha256(self.canonical_jwk().encode("utf-8")).digest()
        return base64url_encode(digest)


def access_token_hash(access_token: str) -> str:
    """Compute the ``ath`` claim binding a proof to an access token."""
    return base64url_encode(hashlib.sha256(access_token.encode("utf-8")).digest())


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key."""
    return {
        "typ": "dpop+jwt",
        "alg": "ES256",
        "jwk": public_key_dict,
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: int,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Args:
        http_method: HTTP method of the request the proof is for
        http_uri: Target URI of the request
        issued_at: Issuance time in unix seconds
        nonce: Optional server-provided DPoP nonce
        access_token: Optional access token to bind with the ``ath`` claim

    Returns:
        Dict[str, Any]: DPoP JWT claims with a fresh ``jti``
    """
    claims: Dict[str, Any] = {
        "jti": str(uuid.uuid4()),
        "htm": http_method,
        "htu": http_uri,
        "iat": issued_at,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


class ProofSigner:
    """Signs DPoP proofs with a single KeyMaterial.

    ``iat`` values never go backwards for proofs signed by the same signer, even
    if the wall clock does.
    """

    def __init__(
        self,
        key_material: KeyMaterial,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key_material = key_material
        self._clock = clock
        self._last_iat = 0

    @property
    def key_material(self) -> KeyMaterial:
        return self._key_material

    def _issued_at(self) -> int:
        self._last_iat = max(self._last_iat, int(self._clock()))
        return self._last_iat

    def sign_proof(
        self,
        method: str,
        url: str,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        """Create a signed DPoP proof JWT for one HTTP request.

        Returns:
            str: Compact serialization ``header.payload.signature``
        """
        header = create_dpop_header(self._key_material.public_jwk)
        claims = create_dpop_claims(
            method, url, self._issued_at(), nonce=nonce, access_token=access_token
        )

        dpop_jwt = jwt.JWT(header=header, claims=claims)
        dpop_jwt.make_signed_token(self._key_material.key)
        return dpop_jwt.serialize()
