"""Configuration management for Ferry.

Storage Structure
-----------------
~/.ferry/                      # or $FERRY_HOME
├── config.yaml                # Tuning (FerryConfig)
├── projects.yaml              # Endpoints + API keys (secrets! 0600)
├── checkpoints/               # <source>__<dest>-<digest>.jsonl journals
└── logs/ferry.log             # File log

Configuration Classes
---------------------
**FerryConfig** (Tuning)
    Page size, leaf concurrency, retry/backoff on rate limiting, proxy
    worker timeouts and the backup bucket id. Unknown keys are ignored.

**ProjectConfig** (Credentials)
    One remote project: endpoint URL, project id and secret key. Credentials
    are not validated here; the first remote call is the validation.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from ferry.atomic import atomic_write_yaml
from ferry.errors import Err, FerryError, Ok, Result

logger = logging.getLogger(__name__)

# Standard paths
FERRY_DIR = Path(os.environ.get("FERRY_HOME", Path.home() / ".ferry"))


def config_path() -> Path:
    return FERRY_DIR / "config.yaml"


def projects_path() -> Path:
    return FERRY_DIR / "projects.yaml"


def checkpoints_dir() -> Path:
    return FERRY_DIR / "checkpoints"


def logs_dir() -> Path:
    return FERRY_DIR / "logs"


@dataclass
class FerryConfig:
    """User-tunable engine parameters."""

    # Remote listing / concurrency
    page_size: int = 100
    max_workers: int = 4
    request_timeout: float = 60.0

    # Rate limiting (HTTP 429) backoff
    max_retries: int = 5
    retry_backoff: float = 1.0
    retry_backoff_max: float = 30.0

    # Proxy worker
    proxy_role: str = "destination"
    proxy_fallback: bool = False
    proxy_poll_interval: float = 2.0
    proxy_deploy_timeout: float = 120.0
    proxy_execution_timeout: float = 900.0

    # Pause after each collection's attributes so the destination can build them
    schema_settle_delay: float = 0.2

    # Backups
    backup_bucket_id: str = "ferry-backups"

    @classmethod
    def load(cls, ferry_dir: Path | None = None) -> "FerryConfig":
        """Load config from a ferry directory, or defaults if absent."""
        path = (ferry_dir or FERRY_DIR) / "config.yaml"
        if not path.exists():
            return cls()

        with open(path) as f:
            overrides = yaml.safe_load(f) or {}

        # Only apply known fields
        valid_fields = {f.name for f in fields(cls)}
        unknown = set(overrides) - valid_fields
        if unknown:
            logger.warning(f"Ignoring unknown config keys in {path}: {sorted(unknown)}")
        return cls(**{k: v for k, v in overrides.items() if k in valid_fields})

    def save(self, ferry_dir: Path | None = None) -> Result[Path, FerryError]:
        """Save non-default values to config.yaml."""
        path = (ferry_dir or FERRY_DIR) / "config.yaml"
        defaults = FerryConfig()
        data = {k: v for k, v in asdict(self).items() if getattr(defaults, k) != v}
        if not data:
            data = {"_version": 1}
        return atomic_write_yaml(path, data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def coerce_config_value(key: str, raw: str) -> Any:
    """Convert a CLI string to the type of a FerryConfig field.

    Raises:
        KeyError: Unknown key
        ValueError: Value does not parse as the field's type
    """
    defaults = FerryConfig()
    if key not in {f.name for f in fields(FerryConfig)}:
        raise KeyError(key)

    current = getattr(defaults, key)
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"Expected a boolean for {key}, got {raw!r}")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


# ============================================================================
# Project registry
# ============================================================================


@dataclass(frozen=True)
class ProjectConfig:
    """Connection details for one remote project."""

    name: str
    endpoint: str
    project_id: str
    api_key: str

    @property
    def base_url(self) -> str:
        return self.endpoint.strip().rstrip("/")


def load_projects() -> dict[str, ProjectConfig]:
    """Load all registered projects, keyed by name."""
    path = projects_path()
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    projects = {}
    for name, entry in (data.get("projects") or {}).items():
        try:
            projects[name] = ProjectConfig(
                name=name,
                endpoint=entry["endpoint"],
                project_id=entry["project_id"],
                api_key=entry["api_key"],
            )
        except (KeyError, TypeError):
            logger.warning(f"Skipping malformed project entry: {name}")
    return projects


def get_project(name: str) -> ProjectConfig | None:
    return load_projects().get(name)


def _write_projects(projects: dict[str, ProjectConfig]) -> Result[Path, FerryError]:
    data = {
        "projects": {
            p.name: {"endpoint": p.endpoint, "project_id": p.project_id, "api_key": p.api_key}
            for p in projects.values()
        }
    }
    # Restricted permissions - file holds API keys
    return atomic_write_yaml(projects_path(), data, mode=0o600)


def save_project(project: ProjectConfig) -> Result[Path, FerryError]:
    """Add or replace a project in the registry."""
    projects = load_projects()
    projects[project.name] = project
    return _write_projects(projects)


def remove_project(name: str) -> Result[bool, FerryError]:
    projects = load_projects()
    if name not in projects:
        return Ok(False)
    del projects[name]

    result = _write_projects(projects)
    if result.is_err():
        return Err(result.unwrap_err())
    return Ok(True)


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    FERRY_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
    checkpoints_dir().mkdir(exist_ok=True)
    logs_dir().mkdir(exist_ok=True)
