import uuid
from datetime import datetime, timedelta, timezone

import pytest

from server.core.coordinator import Coordinator
from server.core.repository import InMemoryRepository
from shared.errors import CheckValidationError, NotFoundError
from shared.models import CheckKind, CheckStatus, EndpointStatus, Severity
from shared.protocol import (
    AgentCheckResult,
    CheckDefinitionRequest,
    HeartbeatRequest,
    RegisterRequest,
    SubmitResultsBatch,
    SystemSnapshotData,
)


def registration(hostname="box-1", **kwargs):
    kwargs.setdefault("os", "Ubuntu")
    kwargs.setdefault("os_version", "22.04")
    kwargs.setdefault("agent_version", "0.1.0")
    return RegisterRequest(hostname=hostname, **kwargs)


def snapshot(**kwargs):
    kwargs.setdefault("cpu_usage", 12.5)
    return SystemSnapshotData(memory_total=8, memory_used=4, disk_total=100, disk_used=50, **kwargs)


def check_request(name="ssh port", check_type="port_open", parameters=None, **kwargs):
    return CheckDefinitionRequest(
        name=name, check_type=check_type, parameters=parameters or {"port": 22}, **kwargs
    )


class TestCoordinator:
    @pytest.fixture
    def repository(self):
        return InMemoryRepository()

    @pytest.fixture
    def coordinator(self, repository):
        return Coordinator(repository, offline_threshold_minutes=10, snapshot_retention_days=7)

    @pytest.fixture
    def endpoint_id(self, coordinator):
        return coordinator.register(registration()).endpoint_id

    def test_register_creates_online_endpoint(self, coordinator, repository):
        response = coordinator.register(registration(ip_addresses=["10.0.0.5"]))

        assert response.message == "Registration successful"
        endpoint = repository.get_endpoint(response.endpoint_id)
        assert endpoint.hostname == "box-1"
        assert endpoint.status == EndpointStatus.ONLINE
        assert endpoint.ip_addresses == ["10.0.0.5"]
        assert endpoint.last_seen is not None

    def test_reregistration_keeps_id(self, coordinator, repository):
        first = coordinator.register(registration())
        second = coordinator.register(registration(agent_version="0.2.0"))

        assert second.endpoint_id == first.endpoint_id
        assert repository.get_endpoint(first.endpoint_id).agent_version == "0.2.0"

    def test_heartbeat_stores_snapshot_and_sets_online(self, coordinator, repository, endpoint_id):
        repository.touch_endpoint(endpoint_id, EndpointStatus.WARNING, datetime(2024, 1, 1, tzinfo=timezone.utc))

        response = coordinator.heartbeat(HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot()))

        assert response.status == "ok"
        endpoint = repository.get_endpoint(endpoint_id)
        assert endpoint.status == EndpointStatus.ONLINE
        assert endpoint.last_seen > datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert repository.latest_snapshot(endpoint_id).cpu_usage == 12.5

    def test_heartbeat_normalizes_naive_timestamps(self, coordinator, repository, endpoint_id):
        naive = datetime(2024, 5, 1, 12, 0)
        coordinator.heartbeat(HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot(collected_at=naive)))

        stored = repository.latest_snapshot(endpoint_id)
        assert stored.collected_at == naive.replace(tzinfo=timezone.utc)

    def test_heartbeat_from_unknown_endpoint(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.heartbeat(HeartbeatRequest(endpoint_id=uuid.uuid4(), snapshot=snapshot()))

    def test_agents_only_receive_enabled_checks(self, coordinator):
        coordinator.create_check(check_request("on"))
        coordinator.create_check(check_request("off", enabled=False))

        checks = coordinator.list_agent_checks().checks

        assert [c.name for c in checks] == ["on"]
        assert checks[0].check_type == "port_open"
        assert checks[0].parameters == {"port": 22}

    def test_failing_result_sets_warning(self, coordinator, repository, endpoint_id):
        check = coordinator.create_check(check_request())

        response = coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[AgentCheckResult(check_id=check.id, status=CheckStatus.FAIL, message="closed")],
            )
        )

        assert response.accepted == 1
        assert response.message == "Accepted 1 results"
        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.WARNING

    def test_passing_batch_restores_online(self, coordinator, repository, endpoint_id):
        check = coordinator.create_check(check_request())
        repository.touch_endpoint(endpoint_id, EndpointStatus.WARNING, datetime.now(timezone.utc))

        coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[
                    AgentCheckResult(check_id=check.id, status=CheckStatus.PASS),
                    AgentCheckResult(check_id=check.id, status=CheckStatus.ERROR),
                ],
            )
        )

        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.ONLINE

    def test_results_for_unknown_checks_are_skipped(self, coordinator, repository, endpoint_id):
        check = coordinator.create_check(check_request())

        response = coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[
                    AgentCheckResult(check_id=uuid.uuid4(), status=CheckStatus.FAIL),
                    AgentCheckResult(check_id=check.id, status=CheckStatus.PASS),
                ],
            )
        )

        assert response.accepted == 1
        # The dropped failure does not count towards the status
        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.ONLINE
        assert len(repository.list_results(endpoint_id=endpoint_id)) == 1

    def test_malformed_results_are_skipped(self, coordinator, repository, endpoint_id):
        check = coordinator.create_check(check_request())

        response = coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[
                    {"check_id": str(check.id), "status": "fail", "message": "closed"},
                    {"check_id": str(check.id), "status": "bogus"},
                    {"check_id": "not-a-uuid", "status": "fail"},
                    {"status": "fail"},
                    "garbage",
                ],
            )
        )

        assert response.accepted == 1
        assert response.message == "Accepted 1 results"
        stored = repository.list_results(endpoint_id=endpoint_id)
        assert [(r.status, r.message) for r in stored] == [(CheckStatus.FAIL, "closed")]
        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.WARNING

    def test_results_from_unknown_endpoint(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.submit_results(SubmitResultsBatch(endpoint_id=uuid.uuid4(), results=[]))

    def test_sweep_marks_silent_endpoints_offline_once(self, coordinator, repository, endpoint_id):
        later = datetime.now(timezone.utc) + timedelta(minutes=11)

        assert coordinator.sweep_offline(now=later) == 1
        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.OFFLINE
        assert coordinator.sweep_offline(now=later) == 0

    def test_sweep_keeps_recent_endpoints(self, coordinator, repository, endpoint_id):
        assert coordinator.sweep_offline() == 0
        assert repository.get_endpoint(endpoint_id).status == EndpointStatus.ONLINE

    def test_cleanup_removes_old_snapshots(self, coordinator, repository, endpoint_id):
        old = datetime.now(timezone.utc) - timedelta(days=8)
        coordinator.heartbeat(HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot(collected_at=old)))
        coordinator.heartbeat(HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot()))

        assert coordinator.cleanup_snapshots() == 1
        assert repository.latest_snapshot(endpoint_id) is not None

    def test_endpoint_detail(self, coordinator, endpoint_id):
        check = coordinator.create_check(check_request())
        coordinator.heartbeat(HeartbeatRequest(endpoint_id=endpoint_id, snapshot=snapshot()))
        coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[AgentCheckResult(check_id=check.id, status=CheckStatus.PASS, message="open")],
            )
        )

        detail = coordinator.get_endpoint_detail(endpoint_id)

        assert detail.endpoint.id == endpoint_id
        assert detail.latest_snapshot.cpu_usage == 12.5
        assert [(r.check_name, r.status) for r in detail.check_results] == [("ssh port", CheckStatus.PASS)]

    def test_detail_of_unknown_endpoint(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.get_endpoint_detail(uuid.uuid4())

    def test_delete_endpoint(self, coordinator, endpoint_id):
        coordinator.delete_endpoint(endpoint_id)

        assert coordinator.list_endpoints() == []
        with pytest.raises(NotFoundError):
            coordinator.delete_endpoint(endpoint_id)

    def test_create_check(self, coordinator):
        check = coordinator.create_check(check_request(severity=Severity.HIGH, description="SSH reachable"))

        assert check.check_type == CheckKind.PORT_OPEN
        assert check.severity == Severity.HIGH
        assert coordinator.get_check(check.id).description == "SSH reachable"

    def test_create_check_rejects_unknown_type(self, coordinator):
        with pytest.raises(CheckValidationError, match="Unknown check type: usb_device"):
            coordinator.create_check(check_request(check_type="usb_device"))
        assert coordinator.list_checks() == []

    def test_create_check_rejects_bad_parameters(self, coordinator):
        with pytest.raises(CheckValidationError):
            coordinator.create_check(check_request(parameters={"port": "ssh"}))

    def test_update_check_keeps_identity(self, coordinator):
        check = coordinator.create_check(check_request())

        updated = coordinator.update_check(
            check.id, check_request("hosts file", "file_exists", {"path": "/etc/hosts"}, enabled=False)
        )

        assert updated.id == check.id
        assert updated.created_at == check.created_at
        assert updated.updated_at >= check.updated_at
        stored = coordinator.get_check(check.id)
        assert stored.check_type == CheckKind.FILE_EXISTS
        assert stored.enabled is False

    def test_update_unknown_check(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.update_check(uuid.uuid4(), check_request())

    def test_delete_check(self, coordinator):
        check = coordinator.create_check(check_request())
        coordinator.delete_check(check.id)

        with pytest.raises(NotFoundError):
            coordinator.get_check(check.id)
        with pytest.raises(NotFoundError):
            coordinator.delete_check(check.id)

    def test_list_results(self, coordinator, endpoint_id):
        check = coordinator.create_check(check_request())
        coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[AgentCheckResult(check_id=check.id, status=CheckStatus.FAIL)],
            )
        )

        filtered = coordinator.list_results(endpoint_id=endpoint_id)
        assert filtered[0].endpoint_id == endpoint_id
        assert filtered[0].check_id == check.id

        recent = coordinator.list_results()
        assert recent[0].endpoint_hostname == "box-1"
        assert recent[0].check_name == "ssh port"

    def test_summary(self, coordinator, endpoint_id):
        coordinator.register(registration("box-2"))
        check = coordinator.create_check(check_request())
        coordinator.create_check(check_request("disabled", enabled=False))
        coordinator.submit_results(
            SubmitResultsBatch(
                endpoint_id=endpoint_id,
                results=[AgentCheckResult(check_id=check.id, status=CheckStatus.FAIL)],
            )
        )

        summary = coordinator.get_summary()

        assert summary.total_endpoints == 2
        assert summary.online_endpoints == 1
        assert summary.warning_endpoints == 1
        assert summary.offline_endpoints == 0
        assert summary.total_checks == 2
        assert summary.enabled_checks == 1
        assert summary.recent_results[0].endpoint_hostname == "box-1"

    def test_check_types_cover_every_kind(self, coordinator):
        types = coordinator.check_types()

        assert set(types) == {kind.value for kind in CheckKind}
        assert all(types.values())
