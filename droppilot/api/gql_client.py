"""
GraphQL client for the remote GQL API.

Handles GraphQL requests with rate limiting, error handling, and retry logic.
"""

from __future__ import annotations

import asyncio
import logging
from itertools import chain
from typing import TYPE_CHECKING, overload

from droppilot.exceptions import AuthInvalid, GQLException, InvalidResponse, MinerException
from droppilot.config import ErrorCode
from droppilot.utils import ExponentialBackoff, RateLimiter


if TYPE_CHECKING:
    from droppilot.api.http_client import HTTPClient
    from droppilot.auth import AuthState
    from droppilot.config import ClientInfo, GQLOperation, JsonType


logger = logging.getLogger("DropPilot")
gql_logger = logging.getLogger("DropPilot.gql")

GQL_URL = "https://gql.twitch.tv/gql"


class GQLClient:
    """
    GraphQL client for the remote GQL API.

    This client provides:
    - Rate-limited GraphQL requests
    - Retry with exponential backoff on transient errors
    - Translation of HTTP 401 into AuthInvalid
    - Support for batched requests
    """

    def __init__(
        self,
        http_client: HTTPClient,
        auth_state: AuthState,
        client_type: ClientInfo,
        *,
        max_attempts: int = 5,
    ):
        """
        Initialize the GraphQL client.

        Parameters
        ----------
        http_client : HTTPClient
            The HTTP client for making requests
        auth_state : AuthState
            Authentication state manager
        client_type : ClientInfo
            Client type information (User-Agent, Client-ID, etc.)
        max_attempts : int, optional
            How many times a failing operation is retried
        """
        self.http_client = http_client
        self._auth_state = auth_state
        self._client_type = client_type
        self._max_attempts = max_attempts
        # NOTE: GQL is volatile and breaks everything if rate limited.
        # Do not modify these safe defaults.
        self._gql_limiter = RateLimiter(capacity=5, window=1)

    @overload
    async def request(self, ops: GQLOperation) -> JsonType:
        ...

    @overload
    async def request(self, ops: list[GQLOperation]) -> list[JsonType]:
        ...

    async def request(
        self, ops: GQLOperation | list[GQLOperation]
    ) -> JsonType | list[JsonType]:
        """
        Execute one or more GraphQL operations.

        Parameters
        ----------
        ops : GQLOperation | list[GQLOperation]
            Single operation or list of operations to execute

        Returns
        -------
        JsonType | list[JsonType]
            Response data for the operation(s)

        Raises
        ------
        AuthInvalid
            If the session token got rejected
        GQLException
            If the GQL API returns an error that can't be handled,
            or the retries were used up
        InvalidResponse
            If the response isn't JSON
        """
        gql_logger.debug(f"GQL Request: {ops}")
        backoff = ExponentialBackoff(maximum=60, max_attempts=self._max_attempts)
        # retry the request once for specific errors
        single_retry: bool = True
        last_error: str = "retries exhausted"

        for delay in backoff:
            async with self._gql_limiter:
                auth_state = await self._auth_state.validate()
                async with self.http_client.request(
                    "POST",
                    GQL_URL,
                    json=ops,
                    headers=auth_state.headers(
                        user_agent=self._client_type.USER_AGENT, gql=True
                    ),
                ) as response:
                    if response.status == 401:
                        self._auth_state.invalidate()
                        raise AuthInvalid("GQL request unauthorized")
                    try:
                        response_json: JsonType | list[JsonType] = await response.json(
                            content_type=None
                        )
                    except ValueError as exc:
                        raise InvalidResponse(
                            ErrorCode.GQL_FAILED, f"GQL response is not JSON ({response.status})"
                        ) from exc

            gql_logger.debug(f"GQL Response: {response_json}")
            orig_response = response_json

            response_list = response_json if isinstance(response_json, list) else [response_json]

            force_retry: bool = False
            for response_json in response_list:
                if not isinstance(response_json, dict):
                    raise InvalidResponse(ErrorCode.GQL_FAILED, "GQL response has unexpected shape")
                if response_json.get("status") == 401:
                    self._auth_state.invalidate()
                    raise AuthInvalid(response_json.get("message"))
                if "errors" in response_json:
                    for error_dict in response_json["errors"]:
                        if "message" not in error_dict:
                            continue
                        message = error_dict["message"]
                        if single_retry and message in ("service error", "PersistedQueryNotFound"):
                            logger.error(
                                f"Retrying a {message} for "
                                f"{response_json.get('extensions', {}).get('operationName')}"
                            )
                            single_retry = False
                            if delay < 5:
                                delay = 5
                            force_retry = True
                            last_error = message
                            break
                        elif message == "server error" and response_json.get("data"):
                            # nullify the key the error path points to
                            data_dict: JsonType = response_json["data"]
                            path: list[str] = error_dict.get("path", [])
                            for key in path[:-1]:
                                data_dict = data_dict[key]
                            if path:
                                data_dict[path[-1]] = None
                            break
                        elif message in (
                            "service timeout",
                            "service unavailable",
                            "context deadline exceeded",
                        ):
                            force_retry = True
                            last_error = message
                            break
                    else:
                        raise GQLException(
                            "; ".join(
                                str(e.get("message", e)) for e in response_json["errors"]
                            )
                        )
                elif "error" in response_json:
                    raise GQLException(
                        f"{response_json['error']}: {response_json.get('message', '')}"
                    )

                if force_retry:
                    break
            else:
                return orig_response

            await asyncio.sleep(delay)

        raise GQLException(f"GQL request failed: {last_error}")

    @staticmethod
    def merge_data(primary_data: JsonType, secondary_data: JsonType) -> JsonType:
        """
        Recursively merge two JSON objects, preferring primary data.

        Used to merge campaign data from the inventory, dashboard and details endpoints.

        Parameters
        ----------
        primary_data : JsonType
            Primary data source (takes precedence)
        secondary_data : JsonType
            Secondary data source (used when key missing in primary)

        Returns
        -------
        JsonType
            Merged data dictionary

        Raises
        ------
        MinerException
            If data types are inconsistent between sources
        """
        merged = {}
        for key in set(chain(primary_data.keys(), secondary_data.keys())):
            in_primary = key in primary_data
            if in_primary and key in secondary_data:
                vp = primary_data[key]
                vs = secondary_data[key]
                if vp is None or vs is None:
                    merged[key] = vs if vp is None else vp
                elif not isinstance(vp, type(vs)) or not isinstance(vs, type(vp)):
                    raise MinerException("Inconsistent merge data")
                elif isinstance(vp, dict):
                    merged[key] = GQLClient.merge_data(vp, vs)
                else:
                    merged[key] = vp
            elif in_primary:
                merged[key] = primary_data[key]
            else:
                merged[key] = secondary_data[key]
        return merged
