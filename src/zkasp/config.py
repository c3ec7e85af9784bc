"""Service configuration loaded from the environment (and an optional .env file)."""

import json
import logging
import shlex
import sys
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from zkasp.exceptions import ConfigurationError

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseSettings):
    """
    ASP settings.

    Every field can be set through an ``ASP_``-prefixed environment variable,
    e.g. ``ASP_DATABASE_URL`` or ``ASP_PROVER_TIMEOUT``.
    """

    model_config = SettingsConfigDict(
        env_prefix="ASP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=0, le=65535)
    log_level: str = "INFO"

    # Storage
    database_url: str = "sqlite:///zkasp.db"

    # Merkle tree
    tree_depth: int = Field(default=20, ge=1, le=32)
    root_history_size: int = Field(default=30, ge=1)

    # Prover worker
    prover_command: str = "node worker/worker.mjs"
    prover_timeout: float = Field(default=120.0, gt=0)
    prover_startup_timeout: float = Field(default=30.0, gt=0)
    prover_max_in_flight: int = Field(default=1, ge=1)
    prover_max_restarts: int = Field(default=5, ge=0)

    # Chain RPC ("mock" runs against an in-memory chain for local development)
    chain_backend: Literal["starknet", "mock"] = "starknet"
    rpc_url: str = "http://127.0.0.1:5050/rpc"
    rpc_timeout: float = Field(default=30.0, gt=0)
    admin_address: str = "0x0"
    coordinator_address: str = "0x0"
    pool_address: str = "0x0"
    deployed_addresses_path: Optional[str] = None

    # Event keys emitted by the coordinator/pool contracts
    commitment_added_key: Optional[str] = None
    root_published_key: Optional[str] = None
    nullifier_spent_key: Optional[str] = None

    # Relay
    relay_max_attempts: int = Field(default=5, ge=1)
    relay_backoff_base: float = Field(default=1.0, ge=0)
    relay_backoff_max: float = Field(default=30.0, ge=0)

    # Chain sync
    sync_interval: float = Field(default=5.0, gt=0)
    sync_batch_blocks: int = Field(default=100, ge=1)
    sync_confirmations: int = Field(default=0, ge=0)

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if not isinstance(logging.getLevelName(value), int):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @property
    def prover_argv(self) -> List[str]:
        """The prover command split into an argument vector."""
        return shlex.split(self.prover_command)

    def load_deployed_addresses(self) -> "Settings":
        """
        Return settings with contract addresses taken from a deployment file.

        The file is the JSON written by the deploy scripts:
        ``{"coordinator": "0x...", "pool": "0x..."}``. Explicit env values
        are kept when no file is configured.
        """
        if not self.deployed_addresses_path:
            return self

        path = Path(self.deployed_addresses_path)
        try:
            addresses = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Invalid deployed addresses file {path}: {e}") from e

        try:
            return self.model_copy(
                update={
                    "coordinator_address": addresses["coordinator"],
                    "pool_address": addresses["pool"],
                }
            )
        except KeyError as e:
            raise ConfigurationError(f"Deployed addresses file {path} is missing {e}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings."""
    return Settings().load_deployed_addresses()


def setup_logging(settings: Settings) -> None:
    """Configure root logging once for the service."""
    logging.basicConfig(
        level=settings.log_level,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
