"""Loopback listener for the OAuth authorization redirect.

Runs a short-lived aiohttp server on the loopback interface that waits for the
authorization server to redirect the user's browser back with a code. The
code is handed to the waiting coroutine through a single-shot future, so only
the first valid redirect is ever delivered.
"""

import asyncio
import logging
from typing import Optional

from aiohttp import web

from social.skyscraper.atproto.errors import (
    AuthorizationError,
    CallbackBindError,
    CallbackTimeout,
)
from social.skyscraper.model.oauth import AuthorizationCode

logger = logging.getLogger(__name__)

SUCCESS_PAGE = (
    "<html><body><h1>Authorization successful!</h1>"
    "<p>You can close this window and return to Skyscraper.</p></body></html>"
)

FAILURE_PAGE = (
    "<html><body><h1>Authorization failed</h1>"
    "<p>Return to Skyscraper for details.</p></body></html>"
)


class CallbackListener:
    """Captures one authorization redirect on a loopback address.

    Use as an async context manager so the socket is released on every exit
    path, including timeouts::

        async with CallbackListener(state) as listener:
            redirect_uri = listener.redirect_uri
            ...
            code = await listener.wait()
    """

    def __init__(
        self,
        expected_state: str,
        host: str = "127.0.0.1",
        port: int = 0,
        path: str = "/callback",
        timeout: float = 120.0,
    ) -> None:
        self._expected_state = expected_state
        self._host = host
        self._port = port
        self._path = path
        self._timeout = timeout

        self._runner: Optional[web.AppRunner] = None
        self._redirect_uri: Optional[str] = None
        self._result: Optional[asyncio.Future[AuthorizationCode]] = None

    @property
    def redirect_uri(self) -> str:
        if self._redirect_uri is None:
            raise RuntimeError("Callback listener has not been started")
        return self._redirect_uri

    @property
    def delivered(self) -> bool:
        return self._result is not None and self._result.done()

    async def start(self) -> str:
        """Bind the listener and return the redirect URI for the bound port.

        Raises:
            CallbackBindError: If the address cannot be bound.
        """
        if self._runner is not None:
            return self.redirect_uri

        self._result = asyncio.get_running_loop().create_future()

        app = web.Application()
        app.router.add_get(self._path, self.handle_callback)

        runner = web.AppRunner(app, access_log=None, shutdown_timeout=2.0)
        await runner.setup()
        try:
            site = web.TCPSite(runner, self._host, self._port)
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise CallbackBindError(
                f"Unable to listen on {self._host}:{self._port}: {e}"
            ) from e

        self._runner = runner
        bound_port = runner.addresses[0][1]
        self._redirect_uri = f"http://{self._host}:{bound_port}{self._path}"
        logger.debug("Listening for authorization redirect on %s", self._redirect_uri)
        return self._redirect_uri

    async def handle_callback(self, request: web.Request) -> web.Response:
        state = request.query.get("state", None)
        code = request.query.get("code", None)
        error = request.query.get("error", None)

        if state != self._expected_state:
            logger.warning("Ignoring authorization redirect with unexpected state")
            return web.Response(status=400, text="Unexpected state parameter")

        if error is not None:
            description = request.query.get("error_description", None) or error
            self._fail(AuthorizationError(f"Authorization denied: {description}", error))
            return web.Response(status=400, text=FAILURE_PAGE, content_type="text/html")

        if not code:
            return web.Response(status=400, text="Missing code parameter")

        self._deliver(
            AuthorizationCode(code=code, state=state, issuer=request.query.get("iss"))
        )
        return web.Response(status=200, text=SUCCESS_PAGE, content_type="text/html")

    def _deliver(self, authorization_code: AuthorizationCode) -> None:
        if self._result is None or self._result.done():
            return
        self._result.set_result(authorization_code)

    def _fail(self, error: Exception) -> None:
        if self._result is None or self._result.done():
            return
        self._result.set_exception(error)

    async def wait(self) -> AuthorizationCode:
        """Wait for a valid redirect, up to the configured timeout.

        Raises:
            CallbackTimeout: If no valid redirect arrives in time.
            AuthorizationError: If the authorization server redirected with an
                error.
        """
        if self._result is None:
            raise RuntimeError("Callback listener has not been started")

        try:
            async with asyncio.timeout(self._timeout):
                return await asyncio.shield(self._result)
        except TimeoutError as e:
            raise CallbackTimeout(
                f"No authorization redirect received within {self._timeout:g} seconds"
            ) from e

    async def close(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()
        if self._result is not None and not self._result.done():
            self._result.cancel()

    async def __aenter__(self) -> "CallbackListener":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
