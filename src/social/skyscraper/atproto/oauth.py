"""
AT Protocol OAuth Client Implementation

This module implements the client side of the OAuth 2.0 authorization code flow
for a native (loopback) AT Protocol client.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 DPoP (Demonstrating Proof of Possession) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)
- OAuth 2.0 for Native Apps, loopback redirects (RFC 8252)

The flow is implemented in two stages around the browser redirect:
1. Authorization (`AuthorizationRequester`): push the authorization request
   (or build it directly when the server has no PAR endpoint) and open the
   resulting URL in the user's browser
2. Exchange (`TokenExchanger`): trade the authorization code and PKCE verifier
   for DPoP-bound tokens
"""

import asyncio
import logging
import webbrowser
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession
import sentry_sdk

from social.skyscraper.atproto.dpop import dpop_post
from social.skyscraper.atproto.errors import AuthorizationError, TokenExchangeError
from social.skyscraper.model.oauth import FlowState, TokenResult

logger = logging.getLogger(__name__)

LOOPBACK_CLIENT_ID = "http://localhost"


def loopback_client_id(redirect_uri: str, scope: str) -> str:
    """Build the AT Protocol loopback client id for a native client.

    Loopback clients have no published metadata document; the redirect URI and
    scope are declared in the client id query string instead.
    """
    return f"{LOOPBACK_CLIENT_ID}?{urlencode({'redirect_uri': redirect_uri, 'scope': scope})}"


def with_query(url: str, **params: str) -> str:
    """Merge query parameters into a URL, keeping any it already has."""
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


def open_in_browser(
    url: str, opener: Callable[[str], bool] = webbrowser.open
) -> bool:
    """Open ``url`` in the default browser.

    Failure to launch a browser is logged and reported but never raised: the
    caller still has the URL and can show it to the user.
    """
    try:
        opened = opener(url)
    except (webbrowser.Error, OSError) as e:
        sentry_sdk.capture_exception(e)
        logger.warning("Unable to launch a browser: %s", e)
        return False

    if not opened:
        logger.warning("No browser available to open the authorization URL")
    return bool(opened)


class AuthorizationRequester:
    """Builds the browser authorization URL for a flow."""

    def __init__(self, http_session: ClientSession, nonce_attempts: int = 3) -> None:
        self._http_session = http_session
        self._nonce_attempts = nonce_attempts

    async def build_authorization_url(self, flow: FlowState) -> str:
        """Return the URL the user must visit to authorize this flow.

        When the server advertises a PAR endpoint the parameters are pushed
        server-side first and the URL only carries the ``request_uri``.

        Raises:
            AuthorizationError: If the PAR request fails or its response is
                malformed.
        """
        endpoints = flow.endpoints

        if endpoints.par_endpoint is None:
            return with_query(
                endpoints.authorization_endpoint,
                response_type="code",
                client_id=flow.client_id,
                redirect_uri=flow.redirect_uri,
                state=flow.state,
                code_challenge=flow.pkce.challenge,
                code_challenge_method="S256",
                scope=flow.scope,
            )

        request_uri = await self._pushed_authorization_request(flow)
        return with_query(
            endpoints.authorization_endpoint,
            client_id=flow.client_id,
            request_uri=request_uri,
        )

    async def _pushed_authorization_request(self, flow: FlowState) -> str:
        par_endpoint = flow.endpoints.par_endpoint
        if par_endpoint is None:
            raise AuthorizationError("No PAR endpoint was discovered for this flow")

        data = {
            "response_type": "code",
            "client_id": flow.client_id,
            "redirect_uri": flow.redirect_uri,
            "state": flow.state,
            "code_challenge": flow.pkce.challenge,
            "code_challenge_method": "S256",
            "scope": flow.scope,
            "login_hint": flow.endpoints.handle,
        }

        try:
            response = await dpop_post(
                self._http_session,
                par_endpoint,
                flow.signer,
                data,
                nonce=flow.dpop_nonce,
                attempts=self._nonce_attempts,
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise AuthorizationError(f"PAR request to {par_endpoint} failed: {e}") from e

        flow.dpop_nonce = response.nonce

        if not response.ok:
            error = response.error_code()
            raise AuthorizationError(
                f"PAR request rejected with HTTP {response.status}"
                + (f" ({error})" if error else ""),
                error=error,
            )

        request_uri = (
            response.body.get("request_uri", None)
            if isinstance(response.body, dict)
            else None
        )
        if not isinstance(request_uri, str) or len(request_uri) == 0:
            raise AuthorizationError("No request_uri in PAR response")

        logger.debug("[%s] Pushed authorization request accepted", flow.attempt_id)
        return request_uri


class TokenExchanger:
    """Exchanges an authorization code for DPoP-bound tokens."""

    def __init__(self, http_session: ClientSession, nonce_attempts: int = 3) -> None:
        self._http_session = http_session
        self._nonce_attempts = nonce_attempts

    async def exchange(self, flow: FlowState, code: str) -> TokenResult:
        """Exchange ``code`` for tokens and consume the flow.

        Raises:
            TokenExchangeError: On a non-2xx response, a missing access token,
                a subject that does not match the discovered DID, or a flow
                that was already consumed.
        """
        if flow.consumed:
            raise TokenExchangeError("Authorization flow has already been used")
        flow.consumed = True

        token_endpoint = flow.endpoints.token_endpoint
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": flow.redirect_uri,
            "client_id": flow.client_id,
            "code_verifier": flow.pkce.verifier,
        }

        try:
            response = await dpop_post(
                self._http_session,
                token_endpoint,
                flow.signer,
                data,
                nonce=flow.dpop_nonce,
                attempts=self._nonce_attempts,
            )
        except (ClientError, asyncio.TimeoutError) as e:
            raise TokenExchangeError(
                f"Token request to {token_endpoint} failed: {e}"
            ) from e

        flow.dpop_nonce = response.nonce

        if not response.ok:
            error = response.error_code()
            raise TokenExchangeError(
                f"Token request rejected with HTTP {response.status}"
                + (f" ({error})" if error else "")
            )

        if not isinstance(response.body, dict):
            raise TokenExchangeError("Invalid token response")
        token_response = response.body

        access_token = token_response.get("access_token", None)
        if not isinstance(access_token, str) or len(access_token) == 0:
            raise TokenExchangeError("No access token")

        subject: Optional[str] = token_response.get("sub", None)
        if subject and subject != flow.endpoints.did:
            raise TokenExchangeError(
                f"Token subject {subject} does not match {flow.endpoints.did}"
            )

        expires_in = token_response.get("expires_in", None)

        return TokenResult(
            access_token=access_token,
            refresh_token=token_response.get("refresh_token", None),
            did=subject or flow.endpoints.did,
            dpop_nonce=token_response.get("dpop_nonce", None) or response.nonce,
            scope=token_response.get("scope", None),
            expires_in=expires_in if isinstance(expires_in, int) else None,
        )
