# Endpoint assessment server entry point
#
# Serves the HTTP API and runs the periodic maintenance jobs (offline sweep
# and snapshot cleanup) alongside it in one event loop.

import argparse
import asyncio
import logging
import sqlite3
import sys

import uvicorn
from pydantic import ValidationError

from server.api.interface import ApiInterface
from server.core.config import MEMORY_DATABASE_URL, ServerConfig
from server.core.coordinator import Coordinator
from server.core.repository import InMemoryRepository, Repository
from server.core.sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)

SNAPSHOT_CLEANUP_INTERVAL_SECS = 3600


def create_repository(database_url: str) -> Repository:
    """
    Pick the store named by DATABASE_URL.

    Raises:
        ValueError: The URL scheme is not supported
    """
    if database_url == MEMORY_DATABASE_URL:
        logger.warning("Using the in-memory store; all data is lost on restart")
        return InMemoryRepository()
    return SQLiteRepository.from_url(database_url)


async def run_periodically(name: str, interval_secs: float, job):
    """
    Run a synchronous job forever on a fixed interval in a worker thread.

    The first run happens immediately. A failing run is logged and the
    schedule continues.
    """
    while True:
        try:
            await asyncio.to_thread(job)
        except Exception as e:
            logger.error(f"Background {name} failed: {e}")
        await asyncio.sleep(interval_secs)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Endpoint assessment server")
    parser.add_argument("--host", help="Address to bind (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: $PORT or 8080)")
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="sqlite:///path or memory:// (default: $DATABASE_URL or sqlite:///./endpoints.db)",
    )
    parser.add_argument("--log-level", dest="log_level", help="Logging level (default: INFO)")
    return parser.parse_args(argv)


async def serve(config: ServerConfig, repository: Repository):
    coordinator = Coordinator(
        repository,
        offline_threshold_minutes=config.offline_threshold_minutes,
        snapshot_retention_days=config.snapshot_retention_days,
    )
    api = ApiInterface(coordinator, agent_secret=config.agent_secret, admin_token=config.admin_token)

    server = uvicorn.Server(
        uvicorn.Config(
            app=api.app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            access_log=False,
        )
    )

    logger.info(f"Server listening on http://{config.host}:{config.port}")
    logger.info(
        f"Offline sweep every {config.sweep_interval_secs}s (threshold {config.offline_threshold_minutes} min), "
        f"snapshot retention {config.snapshot_retention_days} days"
    )

    background = [
        asyncio.create_task(
            run_periodically("offline sweep", config.sweep_interval_secs, coordinator.sweep_offline)
        ),
        asyncio.create_task(
            run_periodically("snapshot cleanup", SNAPSHOT_CLEANUP_INTERVAL_SECS, coordinator.cleanup_snapshots)
        ),
    ]

    try:
        await server.serve()
    finally:
        # The jobs never finish on their own; stop them once uvicorn has shut down
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        repository.close()


def main(argv=None):
    args = parse_args(argv)

    try:
        config = ServerConfig.from_env(**vars(args))
    except ValidationError as e:
        print(f"Invalid server configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config.warn_insecure_defaults()

    try:
        repository = create_repository(config.database_url)
    except (ValueError, sqlite3.Error) as e:
        logger.error(f"Cannot open database: {e}")
        sys.exit(2)

    try:
        asyncio.run(serve(config, repository))
    except KeyboardInterrupt:
        logger.info("Server shutting down")


if __name__ == "__main__":
    main()
