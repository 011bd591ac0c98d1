# SQLite-backed repository
#
# One connection per operation with a commit per write; SQLite serialises
# writers, which gives the atomic single-row updates the Coordinator relies on.
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from server.core.repository import Repository
from shared.errors import NotFoundError
from shared.models import (
    CheckDefinition,
    CheckResult,
    Endpoint,
    EndpointStatus,
    SystemSnapshot,
    as_utc,
)
from shared.protocol import EndpointCheckResult, ResultResponse

logger = logging.getLogger(__name__)

SQLITE_URL_PREFIX = "sqlite:///"

# Fixed width and offset so stored timestamps compare correctly as text
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS endpoints (
        id TEXT PRIMARY KEY,
        hostname TEXT NOT NULL UNIQUE,
        os TEXT,
        os_version TEXT,
        agent_version TEXT,
        ip_addresses TEXT NOT NULL DEFAULT '[]',
        last_seen TEXT,
        status TEXT NOT NULL DEFAULT 'offline',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_endpoints_status ON endpoints(status)",
    "CREATE INDEX IF NOT EXISTS idx_endpoints_last_seen ON endpoints(last_seen)",
    """
    CREATE TABLE IF NOT EXISTS check_definitions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        check_type TEXT NOT NULL,
        parameters TEXT NOT NULL,
        severity TEXT NOT NULL DEFAULT 'medium',
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_check_definitions_enabled ON check_definitions(enabled)",
    """
    CREATE TABLE IF NOT EXISTS check_results (
        id TEXT PRIMARY KEY,
        endpoint_id TEXT NOT NULL REFERENCES endpoints(id) ON DELETE CASCADE,
        check_id TEXT NOT NULL REFERENCES check_definitions(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        message TEXT,
        collected_at TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_check_results_endpoint_id ON check_results(endpoint_id)",
    "CREATE INDEX IF NOT EXISTS idx_check_results_check_id ON check_results(check_id)",
    "CREATE INDEX IF NOT EXISTS idx_check_results_collected_at ON check_results(collected_at)",
    """
    CREATE TABLE IF NOT EXISTS system_snapshots (
        id TEXT PRIMARY KEY,
        endpoint_id TEXT NOT NULL REFERENCES endpoints(id) ON DELETE CASCADE,
        cpu_usage REAL,
        memory_total INTEGER,
        memory_used INTEGER,
        disk_total INTEGER,
        disk_used INTEGER,
        processes TEXT NOT NULL DEFAULT '[]',
        open_ports TEXT NOT NULL DEFAULT '[]',
        installed_software TEXT NOT NULL DEFAULT '[]',
        collected_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_system_snapshots_endpoint_id ON system_snapshots(endpoint_id)",
    "CREATE INDEX IF NOT EXISTS idx_system_snapshots_collected_at ON system_snapshots(collected_at)",
)


def database_path(database_url: str) -> str:
    """
    Extract the file path from a "sqlite:///path" URL.

    Raises:
        ValueError: The URL is not a sqlite:/// URL
    """
    if not database_url.startswith(SQLITE_URL_PREFIX):
        raise ValueError(f"Unsupported database URL: {database_url}")
    return database_url[len(SQLITE_URL_PREFIX):]


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).strftime(TIMESTAMP_FORMAT) if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _endpoint_from_row(row: sqlite3.Row) -> Endpoint:
    return Endpoint(
        id=row["id"],
        hostname=row["hostname"],
        os=row["os"],
        os_version=row["os_version"],
        agent_version=row["agent_version"],
        ip_addresses=json.loads(row["ip_addresses"]),
        last_seen=_parse_ts(row["last_seen"]),
        status=row["status"],
        created_at=_parse_ts(row["created_at"]),
    )


def _check_from_row(row: sqlite3.Row) -> CheckDefinition:
    return CheckDefinition(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        check_type=row["check_type"],
        parameters=json.loads(row["parameters"]),
        severity=row["severity"],
        enabled=bool(row["enabled"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _result_from_row(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        check_id=row["check_id"],
        status=row["status"],
        message=row["message"],
        collected_at=_parse_ts(row["collected_at"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _snapshot_from_row(row: sqlite3.Row) -> SystemSnapshot:
    return SystemSnapshot(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        collected_at=_parse_ts(row["collected_at"]),
        cpu_usage=row["cpu_usage"],
        memory_total=row["memory_total"],
        memory_used=row["memory_used"],
        disk_total=row["disk_total"],
        disk_used=row["disk_used"],
        processes=json.loads(row["processes"]),
        open_ports=json.loads(row["open_ports"]),
        installed_software=json.loads(row["installed_software"]),
    )


class SQLiteRepository(Repository):
    """
    Repository stored in a single SQLite file.

    Args:
        path: Database file path; created with its tables on first use
    """

    def __init__(self, path: str):
        self.path = path
        self.create_tables()

    @classmethod
    def from_url(cls, database_url: str) -> "SQLiteRepository":
        return cls(database_path(database_url))

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create_tables(self):
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info(f"SQLite database ready at {self.path}")

    # Endpoints

    def upsert_endpoint(self, endpoint: Endpoint) -> Endpoint:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO endpoints
                    (id, hostname, os, os_version, agent_version, ip_addresses, last_seen, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(hostname) DO UPDATE SET
                    os = excluded.os,
                    os_version = excluded.os_version,
                    agent_version = excluded.agent_version,
                    ip_addresses = excluded.ip_addresses,
                    last_seen = excluded.last_seen,
                    status = excluded.status
                """,
                (
                    str(endpoint.id),
                    endpoint.hostname,
                    endpoint.os,
                    endpoint.os_version,
                    endpoint.agent_version,
                    json.dumps(endpoint.ip_addresses),
                    _format_ts(endpoint.last_seen),
                    endpoint.status.value,
                    _format_ts(endpoint.created_at),
                ),
            )
            row = conn.execute(
                "SELECT * FROM endpoints WHERE hostname = ?", (endpoint.hostname,)
            ).fetchone()
        return _endpoint_from_row(row)

    def get_endpoint(self, endpoint_id: uuid.UUID) -> Optional[Endpoint]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM endpoints WHERE id = ?", (str(endpoint_id),)).fetchone()
        return _endpoint_from_row(row) if row else None

    def list_endpoints(self) -> List[Endpoint]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM endpoints ORDER BY hostname").fetchall()
        return [_endpoint_from_row(row) for row in rows]

    def delete_endpoint(self, endpoint_id: uuid.UUID) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM endpoints WHERE id = ?", (str(endpoint_id),))
        return cursor.rowcount > 0

    def touch_endpoint(self, endpoint_id: uuid.UUID, status: EndpointStatus, last_seen: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE endpoints SET status = ?, last_seen = ? WHERE id = ?",
                (status.value, _format_ts(last_seen), str(endpoint_id)),
            )
        return cursor.rowcount > 0

    def mark_offline(self, threshold: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE endpoints SET status = ?
                WHERE last_seen IS NOT NULL AND last_seen < ? AND status != ?
                """,
                (EndpointStatus.OFFLINE.value, _format_ts(threshold), EndpointStatus.OFFLINE.value),
            )
        return cursor.rowcount

    def count_endpoints_by_status(self) -> Dict[EndpointStatus, int]:
        counts = {status: 0 for status in EndpointStatus}
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM endpoints GROUP BY status").fetchall()
        for row in rows:
            counts[EndpointStatus(row["status"])] = row["n"]
        return counts

    # Check definitions

    def create_check(self, check: CheckDefinition) -> CheckDefinition:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO check_definitions
                    (id, name, description, check_type, parameters, severity, enabled, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(check.id),
                    check.name,
                    check.description,
                    check.check_type.value,
                    json.dumps(check.parameters),
                    check.severity.value,
                    int(check.enabled),
                    _format_ts(check.created_at),
                    _format_ts(check.updated_at),
                ),
            )
        return check

    def get_check(self, check_id: uuid.UUID) -> Optional[CheckDefinition]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM check_definitions WHERE id = ?", (str(check_id),)
            ).fetchone()
        return _check_from_row(row) if row else None

    def list_checks(self, enabled_only: bool = False) -> List[CheckDefinition]:
        query = "SELECT * FROM check_definitions"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY name").fetchall()
        return [_check_from_row(row) for row in rows]

    def update_check(self, check: CheckDefinition) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE check_definitions
                SET name = ?, description = ?, check_type = ?, parameters = ?,
                    severity = ?, enabled = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    check.name,
                    check.description,
                    check.check_type.value,
                    json.dumps(check.parameters),
                    check.severity.value,
                    int(check.enabled),
                    _format_ts(check.updated_at),
                    str(check.id),
                ),
            )
        return cursor.rowcount > 0

    def delete_check(self, check_id: uuid.UUID) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM check_definitions WHERE id = ?", (str(check_id),))
        return cursor.rowcount > 0

    # Results

    def insert_result(self, result: CheckResult) -> CheckResult:
        with self._connect() as conn:
            if conn.execute("SELECT 1 FROM endpoints WHERE id = ?", (str(result.endpoint_id),)).fetchone() is None:
                raise NotFoundError("endpoint", result.endpoint_id)
            if conn.execute(
                "SELECT 1 FROM check_definitions WHERE id = ?", (str(result.check_id),)
            ).fetchone() is None:
                raise NotFoundError("check", result.check_id)

            conn.execute(
                """
                INSERT INTO check_results (id, endpoint_id, check_id, status, message, collected_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(result.id),
                    str(result.endpoint_id),
                    str(result.check_id),
                    result.status.value,
                    result.message,
                    _format_ts(result.collected_at),
                    _format_ts(result.created_at),
                ),
            )
        return result

    def list_results(
        self,
        endpoint_id: Optional[uuid.UUID] = None,
        check_id: Optional[uuid.UUID] = None,
        limit: int = 100,
    ) -> List[CheckResult]:
        clauses, params = [], []
        if endpoint_id is not None:
            clauses.append("endpoint_id = ?")
            params.append(str(endpoint_id))
        if check_id is not None:
            clauses.append("check_id = ?")
            params.append(str(check_id))

        query = "SELECT * FROM check_results"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY collected_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_result_from_row(row) for row in rows]

    def latest_results(self, endpoint_id: uuid.UUID) -> List[EndpointCheckResult]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT check_id, check_name, status, message, collected_at FROM (
                    SELECT cr.check_id, cd.name AS check_name, cr.status, cr.message, cr.collected_at,
                           ROW_NUMBER() OVER (PARTITION BY cr.check_id ORDER BY cr.collected_at DESC) AS rn
                    FROM check_results cr
                    JOIN check_definitions cd ON cd.id = cr.check_id
                    WHERE cr.endpoint_id = ?
                )
                WHERE rn = 1
                ORDER BY check_id
                """,
                (str(endpoint_id),),
            ).fetchall()

        return [
            EndpointCheckResult(
                check_id=row["check_id"],
                check_name=row["check_name"],
                status=row["status"],
                message=row["message"],
                collected_at=_parse_ts(row["collected_at"]),
            )
            for row in rows
        ]

    def recent_results(self, limit: int = 10) -> List[ResultResponse]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT cr.id, e.hostname AS endpoint_hostname, cd.name AS check_name,
                       cr.status, cr.message, cr.collected_at
                FROM check_results cr
                JOIN endpoints e ON e.id = cr.endpoint_id
                JOIN check_definitions cd ON cd.id = cr.check_id
                ORDER BY cr.collected_at DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            ResultResponse(
                id=row["id"],
                endpoint_hostname=row["endpoint_hostname"],
                check_name=row["check_name"],
                status=row["status"],
                message=row["message"],
                collected_at=_parse_ts(row["collected_at"]),
            )
            for row in rows
        ]

    # Snapshots

    def insert_snapshot(self, snapshot: SystemSnapshot) -> SystemSnapshot:
        data = snapshot.model_dump(mode="json")
        with self._connect() as conn:
            if conn.execute("SELECT 1 FROM endpoints WHERE id = ?", (str(snapshot.endpoint_id),)).fetchone() is None:
                raise NotFoundError("endpoint", snapshot.endpoint_id)

            conn.execute(
                """
                INSERT INTO system_snapshots
                    (id, endpoint_id, cpu_usage, memory_total, memory_used, disk_total, disk_used,
                     processes, open_ports, installed_software, collected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(snapshot.id),
                    str(snapshot.endpoint_id),
                    snapshot.cpu_usage,
                    snapshot.memory_total,
                    snapshot.memory_used,
                    snapshot.disk_total,
                    snapshot.disk_used,
                    json.dumps(data["processes"]),
                    json.dumps(data["open_ports"]),
                    json.dumps(data["installed_software"]),
                    _format_ts(snapshot.collected_at),
                ),
            )
        return snapshot

    def latest_snapshot(self, endpoint_id: uuid.UUID) -> Optional[SystemSnapshot]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM system_snapshots
                WHERE endpoint_id = ?
                ORDER BY collected_at DESC
                LIMIT 1
                """,
                (str(endpoint_id),),
            ).fetchone()
        return _snapshot_from_row(row) if row else None

    def delete_snapshots_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM system_snapshots WHERE collected_at < ?", (_format_ts(cutoff),)
            )
        return cursor.rowcount
