"""
HTTP client for remote API requests.

Handles HTTP session management, request retries, and connection quality settings.
"""

from __future__ import annotations

import asyncio
import logging
from collections import abc
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import aiohttp
from yarl import URL

from droppilot.config import COOKIES_PATH, ErrorCode
from droppilot.exceptions import ExitRequest, RemoteError
from droppilot.utils import ExponentialBackoff


if TYPE_CHECKING:
    from droppilot.config import ClientInfo
    from droppilot.config.settings import Settings


logger = logging.getLogger("DropPilot")


class HTTPClient:
    """
    Manages the HTTP session and retries requests with exponential backoff.

    This client provides:
    - Session management with cookie persistence
    - Bounded request retries on connection errors and 5xx responses
    - Connection quality-based timeout configuration
    - Proxy support
    """

    def __init__(self, settings: Settings, client_type: ClientInfo, *, max_attempts: int = 6):
        """
        Initialize the HTTP client.

        Parameters
        ----------
        settings : Settings
            Application settings for connection quality and proxy configuration
        client_type : ClientInfo
            Client type information (User-Agent, Client-ID, etc.)
        max_attempts : int, optional
            How many times a request is tried before giving up
        """
        self.settings = settings
        self._client_type = client_type
        self._max_attempts = max_attempts
        self._session: aiohttp.ClientSession | None = None
        self._closing: bool = False

    async def get_session(self) -> aiohttp.ClientSession:
        """
        Get or create the HTTP session.

        Returns
        -------
        aiohttp.ClientSession
            The active HTTP session

        Raises
        ------
        ExitRequest
            If the client is closing
        """
        if self._closing:
            raise ExitRequest()
        if (session := self._session) is not None and not session.closed:
            return session

        cookie_jar = aiohttp.CookieJar()
        if COOKIES_PATH.exists():
            try:
                cookie_jar.load(COOKIES_PATH)
            except (OSError, EOFError, ValueError):
                logger.warning("Unable to load the cookie jar, starting with an empty one")
                cookie_jar.clear()

        connection_quality = self.settings.connection_quality
        if connection_quality < 1:
            connection_quality = self.settings.connection_quality = 1
        elif connection_quality > 6:
            connection_quality = self.settings.connection_quality = 6

        timeout = aiohttp.ClientTimeout(
            sock_connect=5 * connection_quality,
            total=10 * connection_quality,
        )
        connector = aiohttp.TCPConnector(limit=50)
        self._session = aiohttp.ClientSession(
            timeout=timeout,
            connector=connector,
            cookie_jar=cookie_jar,
            headers={"User-Agent": self._client_type.USER_AGENT},
        )
        return self._session

    @property
    def cookie_jar(self) -> aiohttp.CookieJar | None:
        if self._session is None:
            return None
        jar = self._session.cookie_jar
        assert isinstance(jar, aiohttp.CookieJar)
        return jar

    @asynccontextmanager
    async def request(
        self, method: str, url: URL | str, **kwargs
    ) -> abc.AsyncIterator[aiohttp.ClientResponse]:
        """
        Make an HTTP request with automatic retries.

        Parameters
        ----------
        method : str
            HTTP method (GET, POST, etc.)
        url : URL | str
            Request URL
        **kwargs
            Additional arguments passed to aiohttp.ClientSession.request

        Yields
        ------
        aiohttp.ClientResponse
            The HTTP response, already read

        Raises
        ------
        ExitRequest
            If the client is closing
        RemoteError
            With the ``request.failed`` code, once all attempts were used up
        aiohttp.ClientConnectorCertificateError
            If SSL verification fails
        """
        session = await self.get_session()
        method = method.upper()

        if self.settings.proxy and "proxy" not in kwargs:
            kwargs["proxy"] = self.settings.proxy

        logger.debug(f"Request: ({method=}, {url=})")
        backoff = ExponentialBackoff(maximum=60, max_attempts=self._max_attempts)
        last_problem: str = "no attempts were made"

        for delay in backoff:
            if self._closing:
                raise ExitRequest()
            response: aiohttp.ClientResponse | None = None
            try:
                response = await session.request(method, url, **kwargs)
                logger.debug(f"Response: {response.status}: {response.url}")

                if response.status < 500:
                    # pre-read, so that the body is available after the connection is released
                    await response.read()
                    yield response
                    return

                last_problem = f"HTTP {response.status}"
                logger.warning(
                    f"{URL(url).host} responded with {response.status}, "
                    f"retrying in {round(delay)}s"
                )
            except aiohttp.ClientConnectorCertificateError:
                # SSL verification failures are never retried
                raise
            except (
                aiohttp.ClientConnectionError,
                asyncio.TimeoutError,
                aiohttp.ClientPayloadError,
            ) as exc:
                last_problem = type(exc).__name__
                if backoff.attempts > 1:
                    # quick first retries aren't worth a warning
                    logger.warning(f"Connection problem ({last_problem}), retrying in {round(delay)}s")
            finally:
                if response is not None:
                    response.release()

            await asyncio.sleep(delay)

        raise RemoteError(
            ErrorCode.REQUEST_FAILED, f"{method} {URL(url).host} failed: {last_problem}"
        )

    def save_cookies(self) -> None:
        jar = self.cookie_jar
        if jar is None:
            return
        # NOTE: aiohttp provides no easy way of clearing empty cookies,
        # so we need to access the private '_cookies' attribute
        for cookie_key, cookie in list(jar._cookies.items()):
            if not cookie:
                del jar._cookies[cookie_key]
        jar.save(COOKIES_PATH)

    async def close(self) -> None:
        """
        Close the HTTP session and save cookies.

        Any request still waiting for a retry raises ExitRequest afterwards.
        """
        self._closing = True
        if self._session is not None:
            self.save_cookies()
            await self._session.close()
            self._session = None
