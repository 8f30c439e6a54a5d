"""
API client modules for remote service communication.

This package provides the HTTP and GraphQL clients,
and the gateway the orchestrator talks through.
"""

from __future__ import annotations

from droppilot.api.gateway import RemoteGateway, TwitchGateway
from droppilot.api.gql_client import GQLClient
from droppilot.api.http_client import HTTPClient


__all__ = [
    "HTTPClient",
    "GQLClient",
    "RemoteGateway",
    "TwitchGateway",
]
