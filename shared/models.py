# Shared data models for the endpoint assessment agent and server
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field  # Data validation and serialization


def utc_now() -> datetime:
    """Timezone-aware current time; every timestamp in the system is UTC."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalise a timestamp to aware UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EndpointStatus(str, Enum):
    """
    Health state of a monitored endpoint.

    ONLINE and WARNING are derived from agent traffic, OFFLINE is only ever set
    by the offline sweep. CRITICAL exists for manual use; no transition in the
    server produces it.
    """

    ONLINE = "online"  # Heartbeat received, no failing checks
    OFFLINE = "offline"  # No heartbeat within the offline threshold
    WARNING = "warning"  # Last result batch contained a failing check
    CRITICAL = "critical"  # Reserved, never set automatically


class Severity(str, Enum):
    """Administrator-assigned importance of a check definition."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CheckStatus(str, Enum):
    """
    Outcome of executing one check.

    FAIL means the check ran and found a problem. ERROR means the check could
    not be evaluated as specified (bad parameters, I/O failure). SKIPPED means
    the check kind does not apply to the agent's platform.
    """

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class CheckKind(str, Enum):
    """Closed set of check kinds understood by the agent's executor."""

    FILE_EXISTS = "file_exists"
    FILE_CONTENT = "file_content"
    REGISTRY_KEY = "registry_key"
    CONFIG_SETTING = "config_setting"
    PROCESS_RUNNING = "process_running"
    PORT_OPEN = "port_open"
    COMMAND_OUTPUT = "command_output"


class Endpoint(BaseModel):
    """
    A machine running the agent, as known to the server.

    Created on first registration and refreshed by later registrations from
    the same hostname, which keep the original id.

    Attributes:
        id: Server-assigned identifier, stable across re-registration
        hostname: Unique host name reported by the agent
        os: Operating system name
        os_version: Operating system version
        agent_version: Version of the agent software
        ip_addresses: Non-loopback, non-link-local addresses
        last_seen: Time of the last heartbeat or result batch
        status: Current derived health state
        created_at: Time of first registration
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    hostname: str
    os: Optional[str] = None
    os_version: Optional[str] = None
    agent_version: Optional[str] = None
    ip_addresses: List[str] = []
    last_seen: Optional[datetime] = None
    status: EndpointStatus = EndpointStatus.OFFLINE
    created_at: datetime = Field(default_factory=utc_now)


class CheckDefinition(BaseModel):
    """
    A configured check, owned by the server.

    ``parameters`` is stored as the raw JSON object the administrator supplied;
    it is validated against the schema for ``check_type`` before it is stored.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    check_type: CheckKind
    parameters: Dict[str, Any]
    severity: Severity = Severity.MEDIUM
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class CheckResult(BaseModel):
    """One persisted check outcome. Results are append-only."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    endpoint_id: uuid.UUID
    check_id: uuid.UUID
    status: CheckStatus
    message: Optional[str] = None
    collected_at: datetime  # Agent-reported execution time
    created_at: datetime = Field(default_factory=utc_now)  # Server receipt time


class ProcessInfo(BaseModel):
    """A single entry of the process list carried in a snapshot."""

    pid: int
    name: str
    cpu_usage: float = 0.0
    memory_bytes: int = 0


class SoftwareInfo(BaseModel):
    name: str
    version: Optional[str] = None
    publisher: Optional[str] = None


class SystemSnapshot(BaseModel):
    """
    Point-in-time host telemetry for one endpoint.

    The process list is capped by the collector, so it never represents the
    full process table, and ``open_ports`` only covers a fixed sample of
    well-known ports.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    endpoint_id: uuid.UUID
    collected_at: datetime
    cpu_usage: float
    memory_total: int
    memory_used: int
    disk_total: int
    disk_used: int
    processes: List[ProcessInfo] = []
    open_ports: List[int] = []
    installed_software: List[SoftwareInfo] = []
