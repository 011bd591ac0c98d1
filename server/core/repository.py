# Storage interface for the server and its in-memory implementation
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from server.core.status import should_mark_offline
from shared.errors import NotFoundError
from shared.models import (
    CheckDefinition,
    CheckResult,
    Endpoint,
    EndpointStatus,
    SystemSnapshot,
)
from shared.protocol import EndpointCheckResult, ResultResponse


class Repository(ABC):
    """
    Persistence used by the Coordinator.

    Implementations must make every single-record write atomic; handlers and
    background tasks call into the repository concurrently. Methods are
    synchronous and are run off the event loop by their callers.
    """

    # Endpoints

    @abstractmethod
    def upsert_endpoint(self, endpoint: Endpoint) -> Endpoint:
        """
        Insert an endpoint, or refresh the one with the same hostname.

        An existing row keeps its id and created_at; every other field is
        taken from ``endpoint``.

        Returns:
            Endpoint: The stored record
        """

    @abstractmethod
    def get_endpoint(self, endpoint_id: uuid.UUID) -> Optional[Endpoint]: ...

    @abstractmethod
    def list_endpoints(self) -> List[Endpoint]:
        """All endpoints ordered by hostname."""

    @abstractmethod
    def delete_endpoint(self, endpoint_id: uuid.UUID) -> bool:
        """Delete an endpoint with its results and snapshots. False if it did not exist."""

    @abstractmethod
    def touch_endpoint(self, endpoint_id: uuid.UUID, status: EndpointStatus, last_seen: datetime) -> bool:
        """Set status and last_seen in one write. False if the endpoint does not exist."""

    @abstractmethod
    def mark_offline(self, threshold: datetime) -> int:
        """Set OFFLINE on reporting endpoints last seen before ``threshold``; returns how many changed."""

    @abstractmethod
    def count_endpoints_by_status(self) -> Dict[EndpointStatus, int]: ...

    # Check definitions

    @abstractmethod
    def create_check(self, check: CheckDefinition) -> CheckDefinition: ...

    @abstractmethod
    def get_check(self, check_id: uuid.UUID) -> Optional[CheckDefinition]: ...

    @abstractmethod
    def list_checks(self, enabled_only: bool = False) -> List[CheckDefinition]:
        """Check definitions ordered by name."""

    @abstractmethod
    def update_check(self, check: CheckDefinition) -> bool:
        """Replace the stored definition with the same id. False if it does not exist."""

    @abstractmethod
    def delete_check(self, check_id: uuid.UUID) -> bool:
        """Delete a definition with its results. False if it did not exist."""

    # Results

    @abstractmethod
    def insert_result(self, result: CheckResult) -> CheckResult:
        """
        Append one result.

        Raises:
            NotFoundError: The endpoint or the check does not exist
        """

    @abstractmethod
    def list_results(
        self,
        endpoint_id: Optional[uuid.UUID] = None,
        check_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[CheckResult]:
        """Results matching the filters, newest collected_at first."""

    @abstractmethod
    def latest_results(self, endpoint_id: uuid.UUID) -> List[EndpointCheckResult]:
        """Most recent result of every check that has reported on the endpoint."""

    @abstractmethod
    def recent_results(self, limit: int = 10) -> List[ResultResponse]:
        """Newest results fleet-wide, labelled with hostname and check name."""

    # Snapshots

    @abstractmethod
    def insert_snapshot(self, snapshot: SystemSnapshot) -> SystemSnapshot:
        """
        Append one snapshot.

        Raises:
            NotFoundError: The endpoint does not exist
        """

    @abstractmethod
    def latest_snapshot(self, endpoint_id: uuid.UUID) -> Optional[SystemSnapshot]: ...

    @abstractmethod
    def delete_snapshots_before(self, cutoff: datetime) -> int:
        """Delete snapshots collected before ``cutoff``; returns how many were removed."""

    def close(self):
        """Release any resources held by the store."""


class InMemoryRepository(Repository):
    """
    Process-local store guarded by a single lock.

    Records are copied on the way in and out so callers never share mutable
    state with the store. Everything is lost when the process exits.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._endpoints: Dict[uuid.UUID, Endpoint] = {}
        self._checks: Dict[uuid.UUID, CheckDefinition] = {}
        self._results: List[CheckResult] = []
        self._snapshots: List[SystemSnapshot] = []

    def upsert_endpoint(self, endpoint: Endpoint) -> Endpoint:
        with self._lock:
            existing = next(
                (e for e in self._endpoints.values() if e.hostname == endpoint.hostname), None
            )
            if existing is not None:
                stored = endpoint.model_copy(
                    update={"id": existing.id, "created_at": existing.created_at}, deep=True
                )
            else:
                stored = endpoint.model_copy(deep=True)
            self._endpoints[stored.id] = stored
            return stored.model_copy(deep=True)

    def get_endpoint(self, endpoint_id: uuid.UUID) -> Optional[Endpoint]:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            return endpoint.model_copy(deep=True) if endpoint else None

    def list_endpoints(self) -> List[Endpoint]:
        with self._lock:
            endpoints = sorted(self._endpoints.values(), key=lambda e: e.hostname)
            return [e.model_copy(deep=True) for e in endpoints]

    def delete_endpoint(self, endpoint_id: uuid.UUID) -> bool:
        with self._lock:
            if self._endpoints.pop(endpoint_id, None) is None:
                return False
            self._results = [r for r in self._results if r.endpoint_id != endpoint_id]
            self._snapshots = [s for s in self._snapshots if s.endpoint_id != endpoint_id]
            return True

    def touch_endpoint(self, endpoint_id: uuid.UUID, status: EndpointStatus, last_seen: datetime) -> bool:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                return False
            endpoint.status = status
            endpoint.last_seen = last_seen
            return True

    def mark_offline(self, threshold: datetime) -> int:
        with self._lock:
            changed = 0
            for endpoint in self._endpoints.values():
                if should_mark_offline(endpoint, threshold):
                    endpoint.status = EndpointStatus.OFFLINE
                    changed += 1
            return changed

    def count_endpoints_by_status(self) -> Dict[EndpointStatus, int]:
        with self._lock:
            counts = {status: 0 for status in EndpointStatus}
            for endpoint in self._endpoints.values():
                counts[endpoint.status] += 1
            return counts

    def create_check(self, check: CheckDefinition) -> CheckDefinition:
        with self._lock:
            self._checks[check.id] = check.model_copy(deep=True)
            return check.model_copy(deep=True)

    def get_check(self, check_id: uuid.UUID) -> Optional[CheckDefinition]:
        with self._lock:
            check = self._checks.get(check_id)
            return check.model_copy(deep=True) if check else None

    def list_checks(self, enabled_only: bool = False) -> List[CheckDefinition]:
        with self._lock:
            checks = [c for c in self._checks.values() if c.enabled or not enabled_only]
            return [c.model_copy(deep=True) for c in sorted(checks, key=lambda c: c.name)]

    def update_check(self, check: CheckDefinition) -> bool:
        with self._lock:
            if check.id not in self._checks:
                return False
            self._checks[check.id] = check.model_copy(deep=True)
            return True

    def delete_check(self, check_id: uuid.UUID) -> bool:
        with self._lock:
            if self._checks.pop(check_id, None) is None:
                return False
            self._results = [r for r in self._results if r.check_id != check_id]
            return True

    def insert_result(self, result: CheckResult) -> CheckResult:
        with self._lock:
            if result.endpoint_id not in self._endpoints:
                raise NotFoundError("endpoint", result.endpoint_id)
            if result.check_id not in self._checks:
                raise NotFoundError("check", result.check_id)
            self._results.append(result.model_copy(deep=True))
            return result

    def list_results(
        self,
        endpoint_id: Optional[uuid.UUID] = None,
        check_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[CheckResult]:
        with self._lock:
            matching = [
                r
                for r in self._results
                if (endpoint_id is None or r.endpoint_id == endpoint_id)
                and (check_id is None or r.check_id == check_id)
            ]
            matching.sort(key=lambda r: r.collected_at, reverse=True)
            return [r.model_copy(deep=True) for r in matching[:limit]]

    def latest_results(self, endpoint_id: uuid.UUID) -> List[EndpointCheckResult]:
        with self._lock:
            latest: Dict[uuid.UUID, CheckResult] = {}
            for result in self._results:
                if result.endpoint_id != endpoint_id:
                    continue
                current = latest.get(result.check_id)
                if current is None or result.collected_at > current.collected_at:
                    latest[result.check_id] = result

            return [
                EndpointCheckResult(
                    check_id=result.check_id,
                    check_name=self._checks[result.check_id].name,
                    status=result.status,
                    message=result.message,
                    collected_at=result.collected_at,
                )
                for result in sorted(latest.values(), key=lambda r: str(r.check_id))
            ]

    def recent_results(self, limit: int = 10) -> List[ResultResponse]:
        with self._lock:
            newest = sorted(self._results, key=lambda r: r.collected_at, reverse=True)[:limit]
            return [
                ResultResponse(
                    id=result.id,
                    endpoint_hostname=self._endpoints[result.endpoint_id].hostname,
                    check_name=self._checks[result.check_id].name,
                    status=result.status,
                    message=result.message,
                    collected_at=result.collected_at,
                )
                for result in newest
            ]

    def insert_snapshot(self, snapshot: SystemSnapshot) -> SystemSnapshot:
        with self._lock:
            if snapshot.endpoint_id not in self._endpoints:
                raise NotFoundError("endpoint", snapshot.endpoint_id)
            self._snapshots.append(snapshot.model_copy(deep=True))
            return snapshot

    def latest_snapshot(self, endpoint_id: uuid.UUID) -> Optional[SystemSnapshot]:
        with self._lock:
            snapshots = [s for s in self._snapshots if s.endpoint_id == endpoint_id]
            if not snapshots:
                return None
            return max(snapshots, key=lambda s: s.collected_at).model_copy(deep=True)

    def delete_snapshots_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [s for s in self._snapshots if s.collected_at >= cutoff]
            removed = len(self._snapshots) - len(kept)
            self._snapshots = kept
            return removed
