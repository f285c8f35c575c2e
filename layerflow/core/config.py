"""Engine configuration loaded from ``.layerflow/config.yaml``.

Every setting has a default, so a missing file or section is fine. The
database path and the config file location can be overridden with the
``LAYERFLOW_DB_PATH`` and ``LAYERFLOW_CONFIG`` environment variables.
"""

from __future__ import annotations

import logging
import os
import random
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR = ".layerflow"

DEFAULT_CONFIG_YAML = """# Layerflow engine configuration
database_path: .layerflow/state.db

# Default per-handler execution budget (seconds); must be below worker.lease_seconds
handler_timeout: 30

retry:
  max_attempts: 3
  initial_delay: 2.0
  backoff_multiplier: 2.0
  max_delay: 300.0
  jitter: 0.1

worker:
  poll_interval: 1.0
  batch_size: 20
  max_parallel: 4
  lease_seconds: 300  # Executing steps older than this are handed back out

runs:
  stall_timeout_seconds: 604800  # Fail runs stuck at an unfired merge after 7 days
  retention_days: 30  # Finished runs are purged after this many days

metering:
  enabled: true
  default_cost: 1  # Credits per behavior step unless the behavior or node sets one

server:
  host: 127.0.0.1
  port: 8000
  cors_origins: []
"""


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


@dataclass
class WorkerSettings:
    poll_interval: float = 1.0
    batch_size: int = 20
    max_parallel: int = 4
    lease_seconds: float = 300.0


@dataclass
class RunSettings:
    stall_timeout_seconds: float = 7 * 24 * 3600
    retention_days: int = 30


@dataclass
class MeteringSettings:
    enabled: bool = True
    default_cost: int = 1


@dataclass
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    database_path: Path = Path(CONFIG_DIR) / "state.db"
    handler_timeout: float | None = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    runs: RunSettings = field(default_factory=RunSettings)
    metering: MeteringSettings = field(default_factory=MeteringSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    def check(self) -> None:
        """Reject settings that would let a running handler outlive its lease.

        A step whose lease expires is handed to another worker; if the first
        handler were still running, the behavior would be invoked twice.
        """
        if not self.handler_timeout:
            raise ValueError("handler_timeout must be set to a positive number of seconds")
        if self.handler_timeout >= self.worker.lease_seconds:
            raise ValueError(
                f"handler_timeout ({self.handler_timeout}s) must be shorter than "
                f"worker.lease_seconds ({self.worker.lease_seconds}s)"
            )


def _section(data: dict[str, Any], name: str, cls: type) -> Any:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{name}' config: {sorted(unknown)}")
    return cls(**{k: v for k, v in section.items() if k in known})


def load_config(path: str | Path | None = None, root: Path | None = None) -> EngineConfig:
    """Load engine configuration.

    Resolution order for the file: explicit ``path``, ``$LAYERFLOW_CONFIG``,
    then ``<root>/.layerflow/config.yaml``. Relative database paths are
    resolved against ``root`` (default: current directory).
    """
    root = root or Path.cwd()
    env_path = os.environ.get("LAYERFLOW_CONFIG")
    config_path = Path(path or env_path or root / CONFIG_DIR / "config.yaml")

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(
                f"Invalid config in '{config_path}': expected a mapping, "
                f"got {type(loaded).__name__}"
            )
        data = loaded or {}

    timeout = data.get("handler_timeout", 30.0)
    config = EngineConfig(
        database_path=Path(data.get("database_path", Path(CONFIG_DIR) / "state.db")),
        handler_timeout=float(timeout) if timeout else None,
        retry=_section(data, "retry", RetryPolicy),
        worker=_section(data, "worker", WorkerSettings),
        runs=_section(data, "runs", RunSettings),
        metering=_section(data, "metering", MeteringSettings),
        server=_section(data, "server", ServerSettings),
    )

    env_db = os.environ.get("LAYERFLOW_DB_PATH")
    if env_db:
        config.database_path = Path(env_db)
    if not config.database_path.is_absolute():
        config.database_path = root / config.database_path
    config.check()
    return config
