"""Authentication state management for DropPilot."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, cast

import aiohttp

from droppilot.config import COOKIES_PATH, ErrorCode
from droppilot.exceptions import AuthInvalid, InvalidResponse
from droppilot.utils import CHARS_HEX_LOWER, create_nonce


if TYPE_CHECKING:
    from droppilot.api.http_client import HTTPClient
    from droppilot.config import ClientInfo, JsonType


logger = logging.getLogger("DropPilot")

VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"


class AuthState:
    """
    Restores and validates the session token kept in the cookie jar.

    This class handles:
    - Restoring the access token from the ``auth-token`` cookie
    - Access token validation, which also yields the user ID and login
    - Session and device ID management
    - Cookie persistence

    There's no interactive login: a missing or rejected token raises AuthInvalid.
    """

    def __init__(self, http_client: HTTPClient, client_type: ClientInfo):
        self._http = http_client
        self._client_type = client_type
        self._lock = asyncio.Lock()
        self.user_id: int
        self.login: str
        self.device_id: str
        self.session_id: str
        self.access_token: str

    def _hasattrs(self, *attrs: str) -> bool:
        return all(hasattr(self, attr) for attr in attrs)

    def _delattrs(self, *attrs: str) -> None:
        for attr in attrs:
            if hasattr(self, attr):
                delattr(self, attr)

    def invalidate(self) -> None:
        """Drop the current access token, forcing the next call to re-validate."""
        self._delattrs("access_token", "user_id", "login")

    def headers(self, *, user_agent: str = "", gql: bool = False) -> JsonType:
        """
        Build HTTP headers for remote API requests.

        Args:
            user_agent: Optional custom User-Agent string
            gql: If True, include GraphQL-specific headers

        Returns:
            Dictionary of HTTP headers
        """
        client_info = self._client_type
        headers = {
            "Accept": "*/*",
            "Accept-Encoding": "gzip",
            "Accept-Language": "en-US",
            "Pragma": "no-cache",
            "Cache-Control": "no-cache",
            "Client-Id": client_info.CLIENT_ID,
        }
        if user_agent:
            headers["User-Agent"] = user_agent
        if hasattr(self, "session_id"):
            headers["Client-Session-Id"] = self.session_id
        if hasattr(self, "device_id"):
            headers["X-Device-Id"] = self.device_id
        if gql:
            headers["Origin"] = str(client_info.CLIENT_URL)
            headers["Referer"] = str(client_info.CLIENT_URL)
            headers["Authorization"] = f"OAuth {self.access_token}"
        return headers

    async def validate(self) -> AuthState:
        """Serialized wrapper for _validate()."""
        async with self._lock:
            await self._validate()
        return self

    async def _validate(self) -> None:
        """
        Restore and validate the session.

        Raises:
            AuthInvalid: If there's no token to restore, or the token got rejected
            InvalidResponse: If the validation endpoint answered with garbage
        """
        if not hasattr(self, "session_id"):
            self.session_id = create_nonce(CHARS_HEX_LOWER, 16)
        if self._hasattrs("device_id", "access_token", "user_id"):
            return
        session = await self._http.get_session()
        jar = cast(aiohttp.CookieJar, session.cookie_jar)
        client_info = self._client_type
        if not self._hasattrs("device_id"):
            cookie = jar.filter_cookies(client_info.CLIENT_URL)
            if "unique_id" not in cookie:
                # visiting the site sets the "unique_id" cookie
                async with self._http.request(
                    "GET", client_info.CLIENT_URL, headers=self.headers()
                ):
                    pass
                cookie = jar.filter_cookies(client_info.CLIENT_URL)
            if "unique_id" in cookie:
                self.device_id = cookie["unique_id"].value
            else:
                self.device_id = create_nonce(CHARS_HEX_LOWER, 32)
        cookie = jar.filter_cookies(client_info.CLIENT_URL)
        if not hasattr(self, "access_token"):
            if "auth-token" not in cookie:
                raise AuthInvalid("No session token to restore")
            logger.info("Restoring session from cookie")
            self.access_token = cookie["auth-token"].value
        # validate the auth token, by obtaining user_id
        async with self._http.request(
            "GET", VALIDATE_URL, headers={"Authorization": f"OAuth {self.access_token}"}
        ) as response:
            if response.status == 401:
                logger.info("Restored session is invalid")
                self.invalidate()
                raise AuthInvalid("Session token was rejected")
            try:
                validate_response: JsonType = await response.json(content_type=None)
            except ValueError as exc:
                raise InvalidResponse(
                    ErrorCode.PROFILE_INVALID_RESPONSE, "Token validation returned no JSON"
                ) from exc
        if "user_id" not in validate_response:
            raise InvalidResponse(
                ErrorCode.PROFILE_INVALID_RESPONSE, "Token validation returned no user ID"
            )
        if validate_response.get("client_id", client_info.CLIENT_ID) != client_info.CLIENT_ID:
            logger.info("Cookie client ID mismatch")
            self.invalidate()
            raise AuthInvalid("Session token belongs to a different client")
        self.user_id = int(validate_response["user_id"])
        self.login = validate_response.get("login", "")
        logger.info(f"Login successful, user ID: {self.user_id}")
        cookie["persistent"] = str(self.user_id)
        jar.update_cookies(cookie, client_info.CLIENT_URL)
        jar.save(COOKIES_PATH)
