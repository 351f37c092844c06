"""
Engine settings model.

Defaults come from ``config``; an optional YAML file can override any field.

Example ``engine.yml``::

    r_executable: /opt/R/4.4/bin/Rscript
    execution_timeout_ms: 120000
    package_repositories:
      CRAN: https://cloud.r-project.org/
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

import config


class EngineSettings(BaseModel):
    """Runtime settings for the engine lifecycle and execution gateway."""

    backend: str = config.ENGINE_BACKEND
    r_executable: str = config.R_EXECUTABLE
    worker_script: Path = config.WORKER_SCRIPT
    library_dir: Optional[Path] = config.R_LIBRARY_DIR
    package_repositories: dict[str, str] = Field(
        default_factory=lambda: dict(config.PACKAGE_REPOSITORIES)
    )
    core_packages: list[str] = Field(default_factory=lambda: list(config.CORE_PACKAGES))
    optional_packages: list[str] = Field(default_factory=lambda: list(config.OPTIONAL_PACKAGES))
    required_libraries: list[str] = Field(default_factory=lambda: list(config.REQUIRED_LIBRARIES))
    optional_libraries: list[str] = Field(default_factory=lambda: list(config.OPTIONAL_LIBRARIES))
    init_max_attempts: int = Field(config.INIT_MAX_ATTEMPTS, ge=1)
    init_backoff_base_seconds: float = Field(config.INIT_BACKOFF_BASE_SECONDS, ge=0)
    init_poll_interval_seconds: float = Field(config.INIT_POLL_INTERVAL_SECONDS, gt=0)
    init_poll_max_checks: int = Field(config.INIT_POLL_MAX_CHECKS, ge=1)
    execution_timeout_ms: int = Field(config.EXECUTION_TIMEOUT_MS, gt=0)
    execution_max_retries: int = Field(config.EXECUTION_MAX_RETRIES, ge=0)
    execution_retry_delay_seconds: float = Field(config.EXECUTION_RETRY_DELAY_SECONDS, ge=0)
    worker_startup_timeout_seconds: float = Field(config.WORKER_STARTUP_TIMEOUT_SECONDS, gt=0)


def load_settings(path: Optional[Path] = None, **overrides) -> EngineSettings:
    """
    Load engine settings, applying YAML overrides and keyword overrides.

    Parameters
    ----------
    path : Path, optional
        YAML file; defaults to ``config.ENGINE_SETTINGS_FILE`` when it exists
    **overrides
        Field values taking precedence over the file

    Returns
    -------
    EngineSettings
        Validated settings

    Raises
    ------
    ValueError
        If the YAML document is not a mapping
    """
    data: dict = {}
    if path is None:
        path = config.ENGINE_SETTINGS_FILE
        if not path.exists():
            path = None
    elif not Path(path).exists():
        raise FileNotFoundError(f"Engine settings file not found: {path}")

    if path is not None:
        with open(path) as f:
            loaded = yaml.safe_load(f)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Engine settings must be a mapping: {path}")
        data.update(loaded)

    data.update(overrides)
    return EngineSettings(**data)
