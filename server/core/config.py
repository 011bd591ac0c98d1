# Server configuration from environment variables and an optional .env file
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_AGENT_SECRET = "change-me-in-production"
MEMORY_DATABASE_URL = "memory://"

ENV_VARIABLES = {
    "HOST": "host",
    "PORT": "port",
    "DATABASE_URL": "database_url",
    "AGENT_SECRET": "agent_secret",
    "ADMIN_TOKEN": "admin_token",
    "OFFLINE_THRESHOLD_MINUTES": "offline_threshold_minutes",
    "SWEEP_INTERVAL_SECS": "sweep_interval_secs",
    "SNAPSHOT_RETENTION_DAYS": "snapshot_retention_days",
    "LOG_LEVEL": "log_level",
}


class ServerConfig(BaseModel):
    """
    Runtime settings for the server.

    Attributes:
        host / port: Address the HTTP API binds to
        database_url: "sqlite:///path" for a SQLite file, "memory://" for a process-local store
        agent_secret: Shared secret every agent must present
        admin_token: Bearer token for the admin API; the admin API is disabled when unset
        offline_threshold_minutes: Silence after which an endpoint is swept to offline
        sweep_interval_secs: Period of the offline sweep
        snapshot_retention_days: Age after which system snapshots are deleted
        log_level: Name of the root logging level
    """

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    database_url: str = "sqlite:///./endpoints.db"
    agent_secret: str = Field(default=DEFAULT_AGENT_SECRET, min_length=1)
    admin_token: Optional[str] = None
    offline_threshold_minutes: int = Field(default=10, gt=0)
    sweep_interval_secs: int = Field(default=60, gt=0)
    snapshot_retention_days: int = Field(default=7, gt=0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, **overrides) -> "ServerConfig":
        """
        Build the configuration from the environment, then apply ``overrides``
        (command-line values; None means "not given").
        """
        load_dotenv()

        values = {}
        for variable, field in ENV_VARIABLES.items():
            value = os.getenv(variable)
            if value:
                values[field] = value

        values.update({field: value for field, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def uses_default_secret(self) -> bool:
        return self.agent_secret == DEFAULT_AGENT_SECRET

    def warn_insecure_defaults(self):
        if self.uses_default_secret:
            logger.warning(
                "AGENT_SECRET is not set; using the built-in default. Set AGENT_SECRET before deploying."
            )
        if not self.admin_token:
            logger.warning("ADMIN_TOKEN is not set; the admin API will answer 503")
