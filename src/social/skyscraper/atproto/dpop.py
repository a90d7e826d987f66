import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiohttp import ClientSession, FormData
from multidict import CIMultiDictProxy

from social.skyscraper.atproto.jwt import ProofSigner

logger = logging.getLogger(__name__)


@dataclass
class DPoPResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: Optional[Any]
    nonce: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_code(self) -> Optional[str]:
        if isinstance(self.body, dict):
            return self.body.get("error", None)
        return None


def is_dpop_nonce_error(response: DPoPResponse) -> bool:
    if response.status not in (400, 401):
        return False

    www_authenticate = response.headers.get("WWW-Authenticate", "")
    if "use_dpop_nonce" in www_authenticate.lower():
        return True

    return response.error_code() == "use_dpop_nonce"


async def dpop_post(
    session: ClientSession,
    url: str,
    signer: ProofSigner,
    data: Dict[str, str],
    nonce: Optional[str] = None,
    attempts: int = 3,
) -> DPoPResponse:
    """POST a form body with a DPoP proof, resigning when the server asks for a nonce.

    A fresh proof is signed for every attempt. When the server rejects a proof
    with ``use_dpop_nonce`` and supplies a ``DPoP-Nonce`` header, the request is
    repeated with that nonce. Any other response, or the last response once the
    attempts are used up, is returned to the caller unchanged.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    while True:
        attempts -= 1

        headers = {"DPoP": signer.sign_proof("POST", url, nonce=nonce)}

        async with session.post(url, headers=headers, data=FormData(data)) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None

            server_nonce = resp.headers.get("DPoP-Nonce", None)
            response = DPoPResponse(
                status=resp.status,
                headers=resp.headers,
                body=body,
                nonce=server_nonce or nonce,
            )

        if (
            attempts > 0
            and server_nonce
            and server_nonce != nonce
            and is_dpop_nonce_error(response)
        ):
            logger.debug("Server requested a DPoP nonce for %s, retrying", url)
            nonce = server_nonce
            continue

        return response
