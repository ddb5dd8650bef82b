from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .errors import ConfigurationError

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:4]]

DEFAULTS: Dict[str, Any] = {
    "supabase": {
        "url": "",
        "service_role_key": "",
    },
    "edge_function": {
        "path": "/functions/v1/process-extraction",
        "timeout_seconds": 30.0,
    },
    "database": {
        "path": "data/extraction.db",
    },
    "queue": {
        "stuck_after_minutes": 15,
        "clear_failed_after_days": 7,
        "retry_batch_limit": 50,
        "cleanup_after_days": 30,
    },
    "orchestrator": {
        "backend": "mock",
    },
}

# Environment variable -> dotted config key. First match wins for duplicated keys.
ENV_OVERRIDES = [
    ("SUPABASE_URL", "supabase.url"),
    ("NEXT_PUBLIC_SUPABASE_URL", "supabase.url"),
    ("SUPABASE_SERVICE_ROLE_KEY", "supabase.service_role_key"),
    ("DOCEXTRACT_DB_PATH", "database.path"),
    ("DOCEXTRACT_ORCHESTRATOR", "orchestrator.backend"),
]


@dataclass(frozen=True)
class Settings:
    """
    Explicit runtime configuration injected into every component.

    Attributes:
        supabase_url: Base URL of the hosted backend (edge functions live under it)
        service_role_key: Service credential sent as a bearer token
        database_path: SQLite file backing the job store
        edge_function_path: Path of the batch processing function
        edge_function_timeout: Timeout in seconds for the trigger call
        stuck_after_minutes: Age after which a processing job counts as stuck
        clear_failed_after_days: Age after which failed jobs may be cleared
        retry_batch_limit: Maximum failed jobs retried by one manage call
        cleanup_after_days: Default age for the old-job cleanup procedure
        orchestrator_backend: Name of the extraction orchestrator to build
    """

    supabase_url: str
    service_role_key: str
    database_path: Path
    edge_function_path: str = "/functions/v1/process-extraction"
    edge_function_timeout: float = 30.0
    stuck_after_minutes: int = 15
    clear_failed_after_days: int = 7
    retry_batch_limit: int = 50
    cleanup_after_days: int = 30
    orchestrator_backend: str = "mock"

    def __post_init__(self) -> None:
        if not self.supabase_url:
            raise ConfigurationError("SUPABASE_URL is required")
        if not self.service_role_key:
            raise ConfigurationError("SUPABASE_SERVICE_ROLE_KEY is required")

    @property
    def function_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}/{self.edge_function_path.lstrip('/')}"


def find_config_file() -> Optional[Path]:
    return next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)


def _env_config() -> DictConfig:
    config = OmegaConf.create()
    seen = set()
    for env_name, key in ENV_OVERRIDES:
        value = os.environ.get(env_name)
        if value and key not in seen:
            OmegaConf.update(config, key, value)
            seen.add(key)
    return config


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None) -> DictConfig:
    """
    Merge defaults, the optional YAML file, the environment and explicit overrides.

    Later sources win. The base is struct-locked so unknown keys in any
    source raise instead of being silently ignored.
    """
    base = OmegaConf.create(DEFAULTS)
    OmegaConf.set_struct(base, True)

    layers = []
    config_path = config_path or find_config_file()
    if config_path is not None:
        layers.append(OmegaConf.load(config_path))
    layers.append(_env_config())
    if overrides:
        layers.append(OmegaConf.create(overrides))

    return DictConfig(OmegaConf.merge(base, *layers))


def load_settings(overrides: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None) -> Settings:
    """
    Build validated settings for the service.

    Args:
        overrides: Nested mapping applied last (mostly used by tests)
        config_path: Explicit YAML file; defaults to the first config/config.yaml found

    Raises:
        ConfigurationError: If the base URL or service credential is missing
    """
    load_dotenv()
    config = make_runtime_config(overrides, config_path)
    return Settings(
        supabase_url=str(config.supabase.url or ""),
        service_role_key=str(config.supabase.service_role_key or ""),
        database_path=Path(config.database.path),
        edge_function_path=str(config.edge_function.path),
        edge_function_timeout=float(config.edge_function.timeout_seconds),
        stuck_after_minutes=int(config.queue.stuck_after_minutes),
        clear_failed_after_days=int(config.queue.clear_failed_after_days),
        retry_batch_limit=int(config.queue.retry_batch_limit),
        cleanup_after_days=int(config.queue.cleanup_after_days),
        orchestrator_backend=str(config.orchestrator.backend),
    )
