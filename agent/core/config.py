# Agent configuration from environment variables and an optional .env file
import os
from typing import Optional

from dotenv import load_dotenv  # Pick up a .env file next to the agent
from pydantic import BaseModel, Field

# Environment variable -> AgentConfig field
ENV_VARIABLES = {
    "SERVER_URL": "server_url",
    "AGENT_SECRET": "agent_secret",
    "COLLECTION_INTERVAL_SECS": "collection_interval_secs",
    "HOSTNAME_OVERRIDE": "hostname_override",
    "CHECK_COMMAND_TIMEOUT_SECS": "check_command_timeout_secs",
    "LOG_LEVEL": "log_level",
}


class AgentConfig(BaseModel):
    """
    Runtime settings for one agent process.

    Attributes:
        server_url: Base URL of the server, e.g. "http://server:8080"
        agent_secret: Shared secret expected by the server
        collection_interval_secs: Seconds between the end of one tick and the start of the next
        hostname_override: Hostname to register instead of the machine's own
        check_command_timeout_secs: Time limit for each command_output check
        log_level: Name of the root logging level
    """

    server_url: str = Field(min_length=1)
    agent_secret: str = Field(min_length=1)
    collection_interval_secs: int = Field(default=300, gt=0)
    hostname_override: Optional[str] = None
    check_command_timeout_secs: float = Field(default=30, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, **overrides) -> "AgentConfig":
        """
        Build the configuration from the environment.

        Args:
            **overrides: Field values that take precedence over the environment
                (command-line arguments); None means "not given"

        Raises:
            pydantic.ValidationError: A required value is missing or a value is malformed
        """
        load_dotenv()

        values = {}
        for variable, field in ENV_VARIABLES.items():
            value = os.getenv(variable)
            if value:  # Unset and empty both mean "use the default"
                values[field] = value

        values.update({field: value for field, value in overrides.items() if value is not None})
        return cls(**values)
