#deploy_engine\orchestrator\config.py

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Pipeline configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Host layout
    data_root: str = "/DATA/AppData"
    apps_root: str = "/DATA/AppData/casaos/apps"
    repos_root: str = "/app/repos"

    # Ownership of provisioned paths and hook execution
    puid: str = "1000"
    pgid: str = "1000"
    service_user: str = "ubuntu"

    # Reference domain used by template variables
    ref_domain: str = ""
    ref_scheme: str = "https"
    ref_port: str = "443"
    ref_separator: str = "-"

    # Admission / auto-update
    max_concurrent_builds: int = 2
    default_auto_update_interval: int = 60
    update_check_poll_seconds: float = 60.0

    # Timeouts
    fetch_timeout_seconds: float = 300.0
    build_timeout_seconds: float = 1800.0
    apply_timeout_seconds: float = 600.0
    apply_retry_timeout_factor: float = 1.5
    hook_timeout_seconds: float = 300.0
    settle_delay_seconds: float = 3.0

    # Host integration
    hook_container_name: str = "casaos"
    annotation_key: str = "x-casaos"

    # Resource limits injected when a service declares none
    default_cpu_limit: Optional[str] = None
    default_memory_limit: Optional[str] = None

    # Inventory sync
    sync_webhook_url: Optional[str] = None
    sync_timeout_seconds: float = 10.0
