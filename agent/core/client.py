# HTTP client for the agent side of the synchronization protocol
import asyncio
import logging
import uuid
from typing import Any, List, Optional, Type, TypeVar

import aiohttp  # Async HTTP client for server communication
from pydantic import BaseModel, ValidationError

from shared.errors import EndpointNotFoundError, TransportError
from shared.protocol import (
    AGENT_SECRET_HEADER,
    AgentCheckDefinition,
    AgentCheckResult,
    ChecksResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    RegisterRequest,
    RegisterResponse,
    SubmitResultsRequest,
    SubmitResultsResponse,
    SystemSnapshotData,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30  # Seconds, covering connect and body read

ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


class ServerClient:
    """
    Talks to the server's /api/agent/ routes.

    Every request carries the shared agent secret. All failures (connection
    errors, timeouts, non-success statuses, unparseable bodies) surface as
    TransportError so the runtime loop only has one thing to catch. A 404 on
    an endpoint-scoped call is raised as EndpointNotFoundError.
    """

    def __init__(self, base_url: str, agent_secret: str, timeout: float = DEFAULT_REQUEST_TIMEOUT):
        """
        Args:
            base_url (str): Server root, e.g. "http://server:8080" (trailing slash tolerated)
            agent_secret (str): Shared secret sent as the X-Agent-Secret header
            timeout (float): Total time allowed per request in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.agent_secret = agent_secret
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ServerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        # Created lazily so the session binds to the running event loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={AGENT_SECRET_HEADER: self.agent_secret},
            )
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def register(self, request: RegisterRequest) -> RegisterResponse:
        data = await self._request("POST", "/api/agent/register", request)
        return self._parse(RegisterResponse, data)

    async def heartbeat(self, endpoint_id: uuid.UUID, snapshot: SystemSnapshotData) -> HeartbeatResponse:
        """
        Report liveness together with a fresh system snapshot.

        Raises:
            EndpointNotFoundError: The server does not know this endpoint id
            TransportError: Any other failure
        """
        payload = HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot)
        data = await self._request("POST", "/api/agent/heartbeat", payload, endpoint_scoped=True)
        return self._parse(HeartbeatResponse, data)

    async def get_checks(self) -> List[AgentCheckDefinition]:
        data = await self._request("GET", "/api/agent/checks")
        return self._parse(ChecksResponse, data).checks

    async def submit_results(
        self, endpoint_id: uuid.UUID, results: List[AgentCheckResult]
    ) -> SubmitResultsResponse:
        """
        Upload one batch of check results.

        Raises:
            EndpointNotFoundError: The server does not know this endpoint id
            TransportError: Any other failure
        """
        payload = SubmitResultsRequest(endpoint_id=endpoint_id, results=results)
        data = await self._request("POST", "/api/agent/results", payload, endpoint_scoped=True)
        return self._parse(SubmitResultsResponse, data)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[BaseModel] = None,
        endpoint_scoped: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        kwargs = {}
        if payload is not None:
            kwargs["json"] = payload.model_dump(mode="json")

        logger.debug(f"{method} {url}")

        try:
            async with self._get_session().request(method, url, **kwargs) as resp:
                if resp.status == 404 and endpoint_scoped:
                    body = await resp.text()
                    raise EndpointNotFoundError(
                        f"Server does not know this endpoint ({path}): {body}", status_code=404
                    )
                if resp.status >= 300:
                    body = await resp.text()
                    raise TransportError(
                        f"Server returned status {resp.status} for {path}: {body}",
                        status_code=resp.status,
                    )
                return await resp.json()
        except asyncio.TimeoutError as e:
            # Before ClientError: aiohttp timeout errors derive from both
            raise TransportError(f"Request to {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            # Body was not JSON
            raise TransportError(f"Invalid response body from {url}: {e}") from e

    def _parse(self, model: Type[ResponseModel], data: Any) -> ResponseModel:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"Unexpected {model.__name__} payload: {e}") from e
