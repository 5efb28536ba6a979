"""
Transport between the sync client and the reconciliation API.

The engine only sees three calls: submit one operation, fetch changes since
a checkpoint, and probe liveness. HTTP status codes are mapped onto the
client's error taxonomy here and nowhere else.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from .config import SyncConfig
from .errors import RejectedError, TransientError
from .models import Applied, ChangeSet, Conflict, Operation, Record, SubmitOutcome

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Narrow interface the engine, pull path and connectivity monitor depend on."""

    @abstractmethod
    async def submit_operation(self, op: Operation) -> SubmitOutcome:
        """Submit one operation. Raises TransientError or RejectedError."""

    @abstractmethod
    async def fetch_changes(self, owner_id: str, since: Optional[int]) -> ChangeSet:
        """Fetch records changed after ``since`` (all when None)."""

    @abstractmethod
    async def probe(self) -> bool:
        """Return True if the liveness endpoint answered in time."""

    async def close(self) -> None:
        """Release network resources."""


class HttpTransport(Transport):
    """httpx-based transport for the reconciliation API."""

    def __init__(
        self,
        config: SyncConfig,
        auth_headers: Optional[Callable[[], dict[str, str]]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._auth_headers = auth_headers
        self._http_client = client
        self._owns_client = client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.api_timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _headers(self) -> dict[str, str]:
        return dict(self._auth_headers()) if self._auth_headers else {}

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Make one request, translating network failures into TransientError."""
        client = await self._get_http_client()
        url = f"{self.config.api_base_url}{endpoint}"
        try:
            return await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"Timeout calling {endpoint}: {e}")
        except httpx.RequestError as e:
            raise TransientError(f"Network error calling {endpoint}: {e}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        detail = body.get("detail") or body.get("error") or ""
        return f"HTTP {response.status_code}: {detail}"

    def _raise_for_failure(self, response: httpx.Response) -> None:
        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientError(self._error_message(response), status_code=status)
        if status >= 400:
            raise RejectedError(self._error_message(response), status_code=status)

    # === Operations ===

    async def submit_operation(self, op: Operation) -> SubmitOutcome:
        response = await self._request("POST", "/sync/operations", json=op.to_wire())

        if response.status_code != 409:
            self._raise_for_failure(response)

        try:
            body = response.json()
            if response.status_code == 409:
                return Conflict(server_record=Record.from_dict(body["record"]))
            record = Record.from_dict(body["record"]) if body.get("record") else None
        except (ValueError, KeyError, TypeError) as e:
            raise TransientError(f"Malformed response for operation {op.id}: {e!r}")

        return Applied(
            record=record,
            deleted=body.get("status") == "deleted",
            replayed=bool(body.get("replayed")),
        )

    async def fetch_changes(self, owner_id: str, since: Optional[int]) -> ChangeSet:
        params: dict = {"owner_id": owner_id}
        if since is not None:
            params["since"] = since

        response = await self._request("GET", "/sync/pull", params=params)
        self._raise_for_failure(response)
        body = response.json()

        return ChangeSet(
            records=[Record.from_dict(r) for r in body.get("records", [])],
            deleted_ids=list(body.get("deleted_ids", [])),
            checkpoint=int(body["checkpoint"]),
        )

    async def probe(self) -> bool:
        client = await self._get_http_client()
        try:
            response = await asyncio.wait_for(
                client.head(self.config.health_url, timeout=self.config.probe_timeout),
                timeout=self.config.probe_timeout,
            )
        except (httpx.RequestError, asyncio.TimeoutError) as e:
            logger.debug(f"Health probe failed: {e!r}")
            return False
        return response.is_success
