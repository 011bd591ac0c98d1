# Wire messages exchanged between agents and the server
#
# Field names and nesting are the protocol contract. Check parameters travel
# as opaque JSON objects and are only interpreted by shared.checks.
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from shared.models import (
    CheckStatus,
    Endpoint,
    ProcessInfo,
    Severity,
    SoftwareInfo,
    SystemSnapshot,
    utc_now,
)

AGENT_SECRET_HEADER = "X-Agent-Secret"


class RegisterRequest(BaseModel):
    """Host identity sent once at agent startup."""

    hostname: str = Field(min_length=1)
    os: str
    os_version: str
    agent_version: str
    ip_addresses: List[str] = []


class RegisterResponse(BaseModel):
    endpoint_id: uuid.UUID
    message: str


class SystemSnapshotData(BaseModel):
    """
    Snapshot payload carried by a heartbeat.

    Same shape as SystemSnapshot minus the server-side identifiers; the server
    attaches the endpoint id when it persists the row.
    """

    collected_at: datetime = Field(default_factory=utc_now)
    cpu_usage: float
    memory_total: int
    memory_used: int
    disk_total: int
    disk_used: int
    processes: List[ProcessInfo] = []
    open_ports: List[int] = []
    installed_software: List[SoftwareInfo] = []

    def into_snapshot(self, endpoint_id: uuid.UUID) -> SystemSnapshot:
        return SystemSnapshot(endpoint_id=endpoint_id, **self.model_dump())


class HeartbeatRequest(BaseModel):
    endpoint_id: uuid.UUID
    snapshot: SystemSnapshotData


class HeartbeatResponse(BaseModel):
    status: str = "ok"
    server_time: datetime = Field(default_factory=utc_now)


class AgentCheckDefinition(BaseModel):
    """
    Projection of a CheckDefinition sent to agents.

    ``check_type`` stays a plain string so an agent older than the server can
    still receive the list and report unknown kinds as errors.
    """

    id: uuid.UUID
    name: str
    check_type: str
    parameters: Dict[str, Any]
    severity: Severity = Severity.MEDIUM


class ChecksResponse(BaseModel):
    checks: List[AgentCheckDefinition] = []


class AgentCheckResult(BaseModel):
    check_id: uuid.UUID
    status: CheckStatus
    message: Optional[str] = None
    collected_at: datetime = Field(default_factory=utc_now)


class SubmitResultsRequest(BaseModel):
    endpoint_id: uuid.UUID
    results: List[AgentCheckResult] = []


class SubmitResultsBatch(BaseModel):
    """
    Server-side view of a SubmitResultsRequest.

    Items stay unparsed so one malformed result can be dropped without
    rejecting the rest of the batch.
    """

    endpoint_id: uuid.UUID
    results: List[Any] = []


class SubmitResultsResponse(BaseModel):
    accepted: int  # May be lower than the number submitted
    message: str


class ErrorResponse(BaseModel):
    """Body of every non-success response from the server."""

    error: str
    message: str


class RecentCheckResult(BaseModel):
    endpoint_hostname: str
    check_name: str
    status: CheckStatus
    message: Optional[str] = None
    collected_at: datetime


class DashboardSummary(BaseModel):
    """Fleet-wide counters returned by the reports API."""

    total_endpoints: int = 0
    online_endpoints: int = 0
    offline_endpoints: int = 0
    warning_endpoints: int = 0
    critical_endpoints: int = 0
    total_checks: int = 0
    enabled_checks: int = 0
    recent_results: List[RecentCheckResult] = []


# Admin API


class CheckDefinitionRequest(BaseModel):
    """
    Body of POST /api/checks and PUT /api/checks/{id}.

    ``check_type`` is kept as a string here so an unknown kind is reported by
    parse_check_parameters with the same message the agent would produce.
    """

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    check_type: str
    parameters: Dict[str, Any]
    severity: Severity = Severity.MEDIUM
    enabled: bool = True


class EndpointCheckResult(BaseModel):
    """Latest result of one check on one endpoint."""

    check_id: uuid.UUID
    check_name: str
    status: CheckStatus
    message: Optional[str] = None
    collected_at: datetime


class EndpointDetail(BaseModel):
    endpoint: Endpoint
    latest_snapshot: Optional[SystemSnapshot] = None
    check_results: List[EndpointCheckResult] = []


class ResultResponse(BaseModel):
    """
    One row of GET /api/results.

    Filtered queries fill the ids; the unfiltered "recent results" view fills
    the hostname and check name instead.
    """

    id: uuid.UUID
    endpoint_id: Optional[uuid.UUID] = None
    endpoint_hostname: Optional[str] = None
    check_id: Optional[uuid.UUID] = None
    check_name: Optional[str] = None
    status: CheckStatus
    message: Optional[str] = None
    collected_at: datetime


class DeleteResponse(BaseModel):
    success: bool = True
    message: str
