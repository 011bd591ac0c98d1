# Agent runtime: registration followed by periodic collection ticks
import asyncio
import logging
import uuid
from typing import List, Optional

from agent.core.client import ServerClient
from agent.core.collector import SystemCollector
from agent.core.config import AgentConfig
from agent.core.executor import CheckExecutor
from agent.core.host import HostInspector
from shared.errors import EndpointNotFoundError, TransportError
from shared.models import utc_now
from shared.protocol import AgentCheckDefinition, AgentCheckResult, RegisterRequest

logger = logging.getLogger(__name__)

AGENT_VERSION = "0.1.0"
REGISTRATION_RETRY_SECS = 30  # Wait between failed registration attempts


class Agent:
    """
    Endpoint agent that reports to a central server.

    Lifecycle:
    1. Register the host identity, retrying every REGISTRATION_RETRY_SECS
       until the server accepts it
    2. Loop forever over collection ticks: snapshot -> heartbeat -> fetch
       checks -> execute them one by one -> submit the batch
    3. Sleep collection_interval_secs after each tick finishes, so ticks
       never overlap

    A failing tick is logged and the loop carries on; only process
    termination stops the agent.
    """

    def __init__(
        self,
        config: AgentConfig,
        client: Optional[ServerClient] = None,
        host: Optional[HostInspector] = None,
    ):
        """
        Args:
            config (AgentConfig): Runtime settings
            client (ServerClient): Server client, built from config when omitted
            host (HostInspector): Host handle, created when omitted
        """
        self.config = config
        self.host = host or HostInspector()
        self.collector = SystemCollector(self.host)
        self.executor = CheckExecutor(self.host, command_timeout=config.check_command_timeout_secs)
        self.client = client or ServerClient(config.server_url, config.agent_secret)
        self.endpoint_id: Optional[uuid.UUID] = None  # Set by register()

    def build_registration(self) -> RegisterRequest:
        hostname = self.config.hostname_override or self.collector.get_hostname()
        return RegisterRequest(
            hostname=hostname,
            os=self.collector.get_os(),
            os_version=self.collector.get_os_version(),
            agent_version=AGENT_VERSION,
            ip_addresses=self.collector.get_ip_addresses(),
        )

    async def register(self) -> uuid.UUID:
        """
        Register with the server, retrying until it succeeds.

        Returns:
            uuid.UUID: Endpoint id assigned by the server (stable for this hostname)
        """
        request = self.build_registration()
        logger.info(f"Registering {request.hostname} ({request.os} {request.os_version})")

        while True:
            try:
                response = await self.client.register(request)
            except Exception as e:
                logger.error(f"Registration failed: {e}; retrying in {REGISTRATION_RETRY_SECS}s")
                await asyncio.sleep(REGISTRATION_RETRY_SECS)
                continue

            self.endpoint_id = response.endpoint_id
            logger.info(f"Registered as endpoint {self.endpoint_id}: {response.message}")
            return self.endpoint_id

    async def run_cycle(self):
        """
        Run one collection tick.

        A failed heartbeat does not stop the tick; failing to fetch checks
        ends it. Results are submitted once and never retried.
        """
        # Collection and checks block (psutil, file I/O, shell commands)
        snapshot = await asyncio.to_thread(self.collector.collect_snapshot)

        try:
            await self.client.heartbeat(self.endpoint_id, snapshot)
            logger.debug(f"Heartbeat sent (cpu {snapshot.cpu_usage:.1f}%)")
        except EndpointNotFoundError as e:
            self._log_unknown_endpoint(e)
        except TransportError as e:
            logger.error(f"Heartbeat failed: {e}")

        try:
            checks = await self.client.get_checks()
        except TransportError as e:
            logger.error(f"Failed to fetch checks: {e}")
            return

        if not checks:
            logger.debug("No checks configured")
            return

        results = await asyncio.to_thread(self.run_checks, checks)

        try:
            response = await self.client.submit_results(self.endpoint_id, results)
            logger.info(f"Submitted {len(results)} check results, {response.accepted} accepted")
        except EndpointNotFoundError as e:
            self._log_unknown_endpoint(e)
        except TransportError as e:
            logger.error(f"Failed to submit {len(results)} check results: {e}")

    def run_check(self, check: AgentCheckDefinition) -> AgentCheckResult:
        outcome = self.executor.execute_check(check)
        logger.debug(f"Check '{check.name}' ({check.check_type}): {outcome.status.value}")

        return AgentCheckResult(
            check_id=check.id,
            status=outcome.status,
            message=outcome.message,
            collected_at=utc_now(),
        )

    def run_checks(self, checks: List[AgentCheckDefinition]) -> List[AgentCheckResult]:
        return [self.run_check(check) for check in checks]

    async def run(self):
        """Register, then run collection ticks until the process is terminated."""
        logger.info(f"Endpoint agent {AGENT_VERSION} starting, server {self.config.server_url}")

        try:
            await self.register()

            while True:
                try:
                    await self.run_cycle()
                except Exception as e:
                    logger.error(f"Collection tick failed: {e}")
                await asyncio.sleep(self.config.collection_interval_secs)
        finally:
            await self.client.close()

    def _log_unknown_endpoint(self, error: EndpointNotFoundError):
        # Typically the server's store was reset; a restart re-registers the agent
        logger.error(
            f"Server does not recognise endpoint {self.endpoint_id}; "
            f"restart the agent to register again ({error})"
        )
