# Server-side coordination of agent traffic and fleet administration
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import ValidationError

from server.core.repository import Repository
from server.core.status import offline_threshold, status_after_heartbeat, status_after_results
from shared.checks import check_type_description, parse_check_parameters
from shared.errors import NotFoundError
from shared.models import (
    CheckDefinition,
    CheckKind,
    CheckResult,
    Endpoint,
    EndpointStatus,
    as_utc,
    utc_now,
)
from shared.protocol import (
    AgentCheckDefinition,
    AgentCheckResult,
    CheckDefinitionRequest,
    ChecksResponse,
    DashboardSummary,
    EndpointDetail,
    HeartbeatRequest,
    HeartbeatResponse,
    RecentCheckResult,
    RegisterRequest,
    RegisterResponse,
    ResultResponse,
    SubmitResultsBatch,
    SubmitResultsResponse,
)

logger = logging.getLogger(__name__)

SUMMARY_RECENT_RESULTS = 10  # Results shown in the fleet summary


class Coordinator:
    """
    Central service behind the HTTP API.

    Handles the four agent protocol calls, derives endpoint status from them,
    runs the periodic maintenance jobs and serves the admin operations. All
    state lives in the repository; the coordinator itself holds only settings,
    so any number of requests and background jobs may call into it at once.

    Methods are synchronous: FastAPI runs them in its threadpool and the
    background jobs hand them to asyncio.to_thread.
    """

    def __init__(
        self,
        repository: Repository,
        offline_threshold_minutes: int = 10,
        snapshot_retention_days: int = 7,
    ):
        """
        Args:
            repository (Repository): Backing store
            offline_threshold_minutes (int): Silence after which the sweep marks an endpoint offline
            snapshot_retention_days (int): Age after which snapshots are deleted by cleanup
        """
        self.repository = repository
        self.offline_threshold_minutes = offline_threshold_minutes
        self.snapshot_retention_days = snapshot_retention_days

    # Agent protocol

    def register(self, request: RegisterRequest) -> RegisterResponse:
        """
        Register an agent, creating or refreshing the endpoint for its hostname.

        The endpoint id is stable across re-registrations from the same host.
        """
        logger.info(f"Agent registration request from hostname: {request.hostname}")

        now = utc_now()
        endpoint = self.repository.upsert_endpoint(
            Endpoint(
                hostname=request.hostname,
                os=request.os,
                os_version=request.os_version,
                agent_version=request.agent_version,
                ip_addresses=request.ip_addresses,
                last_seen=now,
                status=EndpointStatus.ONLINE,
                created_at=now,
            )
        )

        logger.info(f"Endpoint {endpoint.hostname} registered as {endpoint.id}")
        return RegisterResponse(endpoint_id=endpoint.id, message="Registration successful")

    def heartbeat(self, request: HeartbeatRequest) -> HeartbeatResponse:
        """
        Record a heartbeat and its snapshot; the endpoint becomes online.

        Raises:
            NotFoundError: The endpoint id is unknown
        """
        now = utc_now()
        if not self.repository.touch_endpoint(request.endpoint_id, status_after_heartbeat(), now):
            raise NotFoundError("endpoint", request.endpoint_id)

        snapshot = request.snapshot.into_snapshot(request.endpoint_id)
        snapshot.collected_at = as_utc(snapshot.collected_at)
        self.repository.insert_snapshot(snapshot)

        logger.debug(f"Heartbeat from {request.endpoint_id} (cpu {snapshot.cpu_usage:.1f}%)")
        return HeartbeatResponse(status="ok", server_time=now)

    def list_agent_checks(self) -> ChecksResponse:
        checks = self.repository.list_checks(enabled_only=True)
        return ChecksResponse(
            checks=[
                AgentCheckDefinition(
                    id=check.id,
                    name=check.name,
                    check_type=check.check_type.value,
                    parameters=check.parameters,
                    severity=check.severity,
                )
                for check in checks
            ]
        )

    def submit_results(self, request: SubmitResultsBatch) -> SubmitResultsResponse:
        """
        Store a batch of check results and recompute the endpoint status.

        Results are validated and stored one at a time; one that is malformed
        or cannot be stored (for example because its check was deleted
        meanwhile) is logged and left out without affecting the others. Only
        stored results count towards the new status.

        Raises:
            NotFoundError: The endpoint id is unknown
        """
        if self.repository.get_endpoint(request.endpoint_id) is None:
            raise NotFoundError("endpoint", request.endpoint_id)

        accepted = []
        for index, raw in enumerate(request.results):
            try:
                item = AgentCheckResult.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed result #{index} from {request.endpoint_id}: {e}")
                continue

            result = CheckResult(
                endpoint_id=request.endpoint_id,
                check_id=item.check_id,
                status=item.status,
                message=item.message,
                collected_at=as_utc(item.collected_at),
            )
            try:
                self.repository.insert_result(result)
            except NotFoundError as e:
                logger.warning(f"Failed to store check result from {request.endpoint_id}: {e}")
                continue
            accepted.append(result)

        status = status_after_results(stored.status for stored in accepted)
        if not self.repository.touch_endpoint(request.endpoint_id, status, utc_now()):
            # Deleted while the batch was being stored
            logger.warning(f"Endpoint {request.endpoint_id} disappeared while storing results")

        logger.info(
            f"Accepted {len(accepted)}/{len(request.results)} results from {request.endpoint_id}, "
            f"status {status.value}"
        )
        return SubmitResultsResponse(
            accepted=len(accepted), message=f"Accepted {len(accepted)} results"
        )

    # Maintenance

    def sweep_offline(self, now: Optional[datetime] = None) -> int:
        """
        Mark endpoints offline when they have been silent past the threshold.

        Endpoints that never reported are left alone. Running the sweep twice
        in a row changes nothing the second time.

        Returns:
            int: Number of endpoints that changed to offline
        """
        threshold = offline_threshold(now or utc_now(), self.offline_threshold_minutes)
        count = self.repository.mark_offline(threshold)
        if count > 0:
            logger.info(f"Marked {count} endpoints as offline")
        return count

    def cleanup_snapshots(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utc_now()) - timedelta(days=self.snapshot_retention_days)
        count = self.repository.delete_snapshots_before(cutoff)
        if count > 0:
            logger.info(f"Cleaned up {count} old snapshots")
        return count

    # Administration

    def list_endpoints(self) -> List[Endpoint]:
        return self.repository.list_endpoints()

    def get_endpoint_detail(self, endpoint_id: uuid.UUID) -> EndpointDetail:
        """
        Endpoint with its latest snapshot and the latest result of each check.

        Raises:
            NotFoundError: The endpoint id is unknown
        """
        endpoint = self.repository.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError("endpoint", endpoint_id)

        return EndpointDetail(
            endpoint=endpoint,
            latest_snapshot=self.repository.latest_snapshot(endpoint_id),
            check_results=self.repository.latest_results(endpoint_id),
        )

    def delete_endpoint(self, endpoint_id: uuid.UUID):
        if not self.repository.delete_endpoint(endpoint_id):
            raise NotFoundError("endpoint", endpoint_id)
        logger.info(f"Deleted endpoint {endpoint_id}")

    def list_checks(self) -> List[CheckDefinition]:
        return self.repository.list_checks()

    def get_check(self, check_id: uuid.UUID) -> CheckDefinition:
        check = self.repository.get_check(check_id)
        if check is None:
            raise NotFoundError("check", check_id)
        return check

    def create_check(self, request: CheckDefinitionRequest) -> CheckDefinition:
        """
        Create a check definition after validating its parameters.

        Raises:
            CheckValidationError: Unknown kind or parameters that do not fit it
        """
        parse_check_parameters(request.check_type, request.parameters)

        check = self.repository.create_check(
            CheckDefinition(
                name=request.name,
                description=request.description,
                check_type=CheckKind(request.check_type),
                parameters=request.parameters,
                severity=request.severity,
                enabled=request.enabled,
            )
        )
        logger.info(f"Created {check.check_type.value} check '{check.name}' ({check.id})")
        return check

    def update_check(self, check_id: uuid.UUID, request: CheckDefinitionRequest) -> CheckDefinition:
        """
        Replace a check definition, keeping its id and creation time.

        Raises:
            NotFoundError: The check id is unknown
            CheckValidationError: Unknown kind or parameters that do not fit it
        """
        existing = self.get_check(check_id)
        parse_check_parameters(request.check_type, request.parameters)

        updated = existing.model_copy(
            update={
                "name": request.name,
                "description": request.description,
                "check_type": CheckKind(request.check_type),
                "parameters": request.parameters,
                "severity": request.severity,
                "enabled": request.enabled,
                "updated_at": utc_now(),
            }
        )
        if not self.repository.update_check(updated):
            raise NotFoundError("check", check_id)

        logger.info(f"Updated check '{updated.name}' ({check_id})")
        return updated

    def delete_check(self, check_id: uuid.UUID):
        if not self.repository.delete_check(check_id):
            raise NotFoundError("check", check_id)
        logger.info(f"Deleted check {check_id}")

    def list_results(
        self,
        endpoint_id: Optional[uuid.UUID] = None,
        check_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[ResultResponse]:
        """
        Recent results, optionally filtered by endpoint and/or check.

        Without a filter the rows are labelled with hostname and check name
        instead of ids.
        """
        if endpoint_id is None and check_id is None:
            return self.repository.recent_results(limit)

        return [
            ResultResponse(
                id=result.id,
                endpoint_id=result.endpoint_id,
                check_id=result.check_id,
                status=result.status,
                message=result.message,
                collected_at=result.collected_at,
            )
            for result in self.repository.list_results(endpoint_id, check_id, limit)
        ]

    def get_summary(self) -> DashboardSummary:
        counts = self.repository.count_endpoints_by_status()
        checks = self.repository.list_checks()
        recent = self.repository.recent_results(SUMMARY_RECENT_RESULTS)

        return DashboardSummary(
            total_endpoints=sum(counts.values()),
            online_endpoints=counts[EndpointStatus.ONLINE],
            offline_endpoints=counts[EndpointStatus.OFFLINE],
            warning_endpoints=counts[EndpointStatus.WARNING],
            critical_endpoints=counts[EndpointStatus.CRITICAL],
            total_checks=len(checks),
            enabled_checks=sum(1 for check in checks if check.enabled),
            recent_results=[
                RecentCheckResult(
                    endpoint_hostname=row.endpoint_hostname,
                    check_name=row.check_name,
                    status=row.status,
                    message=row.message,
                    collected_at=row.collected_at,
                )
                for row in recent
            ],
        )

    def check_types(self) -> Dict[str, str]:
        return {kind.value: check_type_description(kind) for kind in CheckKind}
