# Endpoint agent entry point
#
# Usage:
#   endpoint-agent [server_url] [agent_secret] [--interval SECS] [--hostname NAME]
#
# Positional arguments override SERVER_URL / AGENT_SECRET from the environment
# (or a .env file in the working directory).

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from agent.core.agent import AGENT_VERSION, Agent
from agent.core.config import AgentConfig

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Endpoint assessment agent")
    parser.add_argument("server_url", nargs="?", help="Server base URL (default: $SERVER_URL)")
    parser.add_argument("agent_secret", nargs="?", help="Shared agent secret (default: $AGENT_SECRET)")
    parser.add_argument(
        "--interval",
        type=int,
        dest="collection_interval_secs",
        help="Seconds between collection ticks (default: $COLLECTION_INTERVAL_SECS or 300)",
    )
    parser.add_argument(
        "--hostname", dest="hostname_override", help="Hostname to register instead of the real one"
    )
    parser.add_argument("--log-level", dest="log_level", help="Logging level (default: INFO)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {AGENT_VERSION}")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        config = AgentConfig.from_env(**vars(args))
    except ValidationError as e:
        print(f"Invalid agent configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(Agent(config).run())
    except KeyboardInterrupt:
        logger.info("Agent shutting down")


if __name__ == "__main__":
    main()
