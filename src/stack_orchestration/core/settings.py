"""
Configuration settings for the stack orchestration service.
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class StackSettings(BaseSettings):
    """Orchestration configuration loaded from environment variables.

    Instances are created by the entry point and passed to the components
    that need them; nothing reads a module-level settings object.
    """

    # Shared state
    state_path: Path = Path(".kaspa-aio/installation-state.json")
    state_debounce_seconds: float = 0.25
    state_poll_interval_seconds: float = 1.0
    read_only_state: bool = False

    # Profile catalog (defaults to the bundled catalog)
    catalog_path: Optional[Path] = None

    # Node RPC
    node_host: str = "localhost"
    node_rpc_port: int = 16110
    node_p2p_port: int = 16111
    probe_timeout_seconds: float = 5.0
    node_retry_interval_seconds: float = 30.0
    node_status_poll_seconds: float = 2.0

    # Health monitoring
    service_poll_interval_seconds: float = 10.0
    docker_timeout_seconds: float = 10.0
    failure_threshold: int = 3

    # Event broadcast
    heartbeat_interval_seconds: float = 30.0
    default_update_interval_ms: int = 5000
    log_idle_grace_seconds: float = 30.0
    log_kill_grace_seconds: float = 5.0
    inactive_cleanup_seconds: float = 300.0

    # Cross-launch
    wizard_url: str = "http://localhost:3000"
    dashboard_url: str = "http://localhost:8080"

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "KASPA_AIO_"
        case_sensitive = False
