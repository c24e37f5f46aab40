"""
Remote Provisioning Client

Narrow RPC boundary to the storm provisioning service running on each
StormServer. Coordinators only see ProvisioningClient; the HTTP
implementation can be swapped (tests inject an in-memory fake).

Success statuses defined by the remote service:
- create_user:        body carries user_id
- destroy_user:       204
- update_user:        204
- bulk_update_users:  200, body {"bandrate", "bandwidth"}
- move_to_storm:      201
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import requests

from storm.models import StormServer

logger = logging.getLogger(__name__)

STATUS_NO_CONTENT = 204
STATUS_OK = 200
STATUS_CREATED = 201


class ProvisioningError(Exception):
    """Transport-level failure talking to a storm server"""


@dataclass
class RemoteResponse:
    status_code: Optional[int] = None
    body: Union[Dict[str, Any], str, None] = field(default=None)

    def json(self) -> Dict[str, Any]:
        """Return the body as a dict; string bodies are decoded as JSON."""
        if self.body is None:
            return {}
        if isinstance(self.body, dict):
            return self.body
        try:
            decoded = json.loads(self.body)
        except (TypeError, ValueError) as e:
            raise ProvisioningError(f"Undecodable response body: {e}")
        if not isinstance(decoded, dict):
            raise ProvisioningError("Response body is not a JSON object")
        return decoded

    def is_status(self, expected: int) -> bool:
        return self.status_code is not None and int(self.status_code) == expected


class ProvisioningClient(ABC):
    """Operations the storm provisioning service exposes per server"""

    @abstractmethod
    def create_user(self, server: StormServer, params: Dict[str, Any]) -> RemoteResponse:
        ...

    @abstractmethod
    def destroy_user(self, server: StormServer, remote_user_id: str) -> RemoteResponse:
        ...

    @abstractmethod
    def update_user(self, server: StormServer, remote_user_id: str, bandrate: int) -> RemoteResponse:
        ...

    @abstractmethod
    def bulk_update_users(self, server: StormServer, remote_user_ids: List[str], bandrate: int) -> RemoteResponse:
        ...

    @abstractmethod
    def move_to_storm(self, server: StormServer, remote_user_id: str, job: Dict[str, Any]) -> RemoteResponse:
        ...


class HttpProvisioningClient(ProvisioningClient):
    """
    ProvisioningClient over HTTP.

    Usage:
        client = HttpProvisioningClient(timeout_seconds=10)
        response = client.update_user(server, "4711", 100)
        if response.is_status(204):
            ...
    """

    def __init__(self, timeout_seconds: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @staticmethod
    def _url(server: StormServer, path: str) -> str:
        return f"{str(server.endpoint).rstrip('/')}/{path.lstrip('/')}"

    def _send(self, method: str, server: StormServer, path: str, payload: Optional[Dict[str, Any]] = None) -> RemoteResponse:
        url = self._url(server, path)
        try:
            logger.debug(f"{method} {url}")
            response = self.session.request(method, url, json=payload, timeout=self.timeout_seconds)
        except requests.exceptions.Timeout:
            logger.error(f"Storm server timeout: {method} {url}")
            raise ProvisioningError(f"Timeout talking to storm server {server.name}")
        except requests.RequestException as e:
            logger.error(f"Storm server request failed: {method} {url}: {e}")
            raise ProvisioningError(f"Cannot reach storm server {server.name}: {e}")

        body: Union[Dict[str, Any], str, None] = None
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = response.text
        logger.debug(f"{method} {url} -> {response.status_code}")
        return RemoteResponse(status_code=response.status_code, body=body)

    def create_user(self, server: StormServer, params: Dict[str, Any]) -> RemoteResponse:
        return self._send("POST", server, "/users", params)

    def destroy_user(self, server: StormServer, remote_user_id: str) -> RemoteResponse:
        return self._send("DELETE", server, f"/users/{remote_user_id}")

    def update_user(self, server: StormServer, remote_user_id: str, bandrate: int) -> RemoteResponse:
        return self._send("PATCH", server, f"/users/{remote_user_id}", {"bandrate": bandrate})

    def bulk_update_users(self, server: StormServer, remote_user_ids: List[str], bandrate: int) -> RemoteResponse:
        return self._send("PATCH", server, "/users", {"user_ids": list(remote_user_ids), "bandrate": bandrate})

    def move_to_storm(self, server: StormServer, remote_user_id: str, job: Dict[str, Any]) -> RemoteResponse:
        return self._send("POST", server, f"/users/{remote_user_id}/mv_to_storm", job)
