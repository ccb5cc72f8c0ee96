"""Runtime configuration: env-driven via pydantic-settings.

Reads from a .env file and SHIPLINE_* environment variables. Pipeline
topology (services, branches) lives in ``shipline.models.config``; this
module holds the operational knobs: paths, timeouts, retry bounds and the
infrastructure backend selection.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Operational settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export SHIPLINE_LOG_LEVEL=DEBUG
        export SHIPLINE_BACKEND=azure
        export SHIPLINE_HEALTH_DEADLINE_SECONDS=300

    Or via .env file::

        SHIPLINE_REGISTRY_HOST=ecommerceacr.azurecr.io
        SHIPLINE_LOCATION=westeurope
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SHIPLINE_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"

    # Storage paths
    ledger_path: Path = Path(".shipline/ledger.db")
    registry_path: Path = Path(".shipline/registry")
    build_log_dir: Path = Path(".shipline/build-logs")
    infrastructure_state_path: Path = Path(".shipline/infrastructure.json")

    # Registry. With the azure backend, registry_host is the ACR login server
    # (``<name>.azurecr.io``) and the credentials are handed to containers.
    registry_host: str = "localhost:5000"
    registry_username: str = ""
    registry_password: str = ""

    # Infrastructure backend: "local" or "azure"
    backend: str = "local"
    location: str = "eastus"
    production_environment_id: str = "ecommerce-production"
    production_resource_group: str = "ecommerce-production-rg"
    staging_resource_group_prefix: str = "ecommerce-staging-rg"
    database_admin_user: str = "postgres"
    database_admin_password: str = ""
    local_endpoint_template: str = "http://localhost:{port}"

    # Health verification
    health_deadline_seconds: float = 120.0
    health_poll_interval_seconds: float = 5.0
    health_poll_jitter_seconds: float = 1.0
    health_consecutive_successes: int = 3
    health_request_timeout_seconds: float = 5.0

    # Provisioning
    provision_timeout_seconds: float = 900.0
    provision_poll_interval_seconds: float = 10.0

    # Retry for transient registry / provisioning errors
    retry_attempts: int = 4
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0

    # Concurrency
    max_concurrent_runs: int = 4
    max_parallel_builds: int = 8

    # Production rollouts hold a lease shared by every shipline process
    production_lease_wait_seconds: float = 1800.0
    production_lease_stale_seconds: float = 3600.0

    # Unit tests run by the builder
    test_command: str = "python -m pytest -q"
    test_timeout_seconds: float = 600.0

