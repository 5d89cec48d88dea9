"""
Configuration for the auto-heal engine.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8910
    debug: bool = False
    log_level: str = "info"

    # Durable store
    redis_url: str = "redis://localhost:6379/0"
    # Upper bound for every single store round-trip
    store_timeout_seconds: float = 5.0

    # Reconciliation cycle
    reconcile_interval_seconds: int = 300  # 5 minutes
    problem_fetch_limit: int = 10
    max_concurrent_clusters: int = 4
    cluster_lock_ttl_seconds: int = 120

    # Command queue / retry
    retry_interval_seconds: int = 60
    command_max_retries: int = 3
    retry_base_delay_seconds: int = 30
    retry_max_delay_seconds: int = 900
    command_lease_timeout_seconds: int = 600

    # Action defaults
    scale_replica_increment: int = 2
    scale_max_replicas: int = 10

    # Pod observations
    protected_namespaces: List[str] = [
        "kube-system",
        "kube-public",
        "kube-node-lease",
    ]
    restart_threshold: int = 3
    missing_limits_ratio: float = 50.0
    missing_limits_batch: int = 5

    # Stored notifications per cluster
    notifications_max_len: int = 200

    # Notification - Slack
    slack_webhook_url: Optional[str] = None
    notification_channel: str = "#autoheal"

    # Notification - PagerDuty
    pagerduty_integration_key: Optional[str] = None

    # Notification - Custom Webhook
    custom_webhook_url: Optional[str] = None
    custom_webhook_method: str = "POST"
    custom_webhook_headers: str = "{}"
    # Jinja2 body template; JSON payload when unset
    custom_webhook_template: Optional[str] = None

    class Config:
        env_prefix = "AUTOHEAL_"


settings = Settings()
