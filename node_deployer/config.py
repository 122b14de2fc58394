# node_deployer/config.py

from datetime import timedelta
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from node_deployer.core.retry import RetryPolicy


class DeployerSettings(BaseSettings):
    """Service configuration from environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    cors_origins: List[str] = ["*"]

    # Store: "postgres" or "memory"
    store_backend: str = "postgres"

    # Database. DATABASE_URL wins over the POSTGRES_* parts.
    database_url: Optional[str] = None
    postgres_user: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "node_deployer"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 3600
    echo_sql: bool = False

    # Auth
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24

    # GitHub
    github_api_url: str = "https://api.github.com"
    github_timeout: float = 10.0

    # Kubernetes
    kubeconfig: Optional[str] = None
    kube_context: Optional[str] = None
    in_cluster: bool = False
    kube_request_timeout: float = 15.0
    default_namespace: str = "node-deployer-apps"
    ingress_class: str = "nginx"
    public_base_url: str = "http://localhost"
    pin_workloads_to_node: bool = False

    # Image builds
    image_build_enabled: bool = True
    docker_base_url: Optional[str] = None
    image_push: bool = False
    build_timeout: int = 600

    # Orchestration
    rollout_workers: int = 4
    max_attempts: int = 3
    retry_base_delay: float = 10.0
    retry_factor: float = 3.0
    retry_max_delay: float = 90.0
    call_attempts: int = 3
    call_base_delay: float = 1.0
    operation_lease_seconds: int = 900
    confirmation_passes: int = 6
    unhealthy_passes: int = 3
    recovery_interval: float = 30.0

    # Collector
    cluster_poll_interval: float = 30.0
    deployment_poll_interval: float = 10.0

    # Node liveness
    liveness_window_seconds: int = 90
    sweep_interval: float = 15.0

    # Start collector/sweeper/recovery threads inside the API process
    run_background_workers: bool = True

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        if not self.postgres_user or not self.postgres_password:
            raise ValueError("Set DATABASE_URL or POSTGRES_USER and POSTGRES_PASSWORD")
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def liveness_window(self) -> timedelta:
        return timedelta(seconds=self.liveness_window_seconds)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            factor=self.retry_factor,
            max_delay=self.retry_max_delay,
            call_attempts=self.call_attempts,
            call_base_delay=self.call_base_delay,
        )


@lru_cache
def get_settings() -> DeployerSettings:
    return DeployerSettings()
