"""
Application configuration using Pydantic Settings.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Application
    APP_NAME: str = "Atlas Deployment Orchestrator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"
    DEBUG: bool = False

    # Database Schema
    DB_SCHEMA: str = "atlas"

    # Database
    DATABASE_URL: str

    # Security
    API_KEY_SALT: str
    ALLOW_ANONYMOUS: bool = True
    ANONYMOUS_USER_ID: str = "00000000-0000-0000-0000-000000000000"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost"

    # Port lease pool
    PORT_RANGE_START: int = 3001
    PORT_RANGE_END: int = 3100

    # Health gate
    HEALTH_CHECK_MAX_ATTEMPTS: int = 15
    HEALTH_CHECK_INTERVAL_MS: int = 2000
    HEALTH_CHECK_TIMEOUT_MS: int = 2000  # per-probe HTTP timeout
    HEALTH_CHECK_PATH: str = "/"
    PROBE_HOST: str = "localhost"

    # Builder sandbox (phase 1, untrusted)
    BUILDER_IMAGE: str = "node:20-alpine"
    BUILD_COMMAND: str = "cd /workspace && npm ci && npm run build"
    BUILD_MANIFEST_FILE: str = "package.json"
    BUILDER_MEMORY_LIMIT: str = "512m"
    BUILDER_CPU_LIMIT: float = 0.5
    BUILDER_PIDS_LIMIT: int = 512
    BUILD_TIMEOUT_SECONDS: int = 600
    BUILD_LOG_MAX_BYTES: int = 1048576  # 1MB of captured output per build
    BUILD_USAGE_SAMPLE_SECONDS: float = 5.0

    # Runner sandbox (phase 2, hardened)
    RUNNER_IMAGE: str = "node:20-alpine"
    RUNNER_COMMAND: str = "cd /app && npm start"
    RUNNER_NETWORK: str = "atlas-runner"
    RUNNER_CONTAINER_PORT: int = 3000
    RUNNER_USER: str = "1000:1000"
    RUNNER_TMPFS_SIZE: str = "100m"
    RUNNER_MAX_RESTARTS: int = 3
    CONTAINER_PREFIX: str = "atlas"
    CONTAINER_STOP_GRACE_SECONDS: int = 10
    DEFAULT_CONTAINER_MEMORY_MB: int = 256
    DEFAULT_CONTAINER_CPU: float = 0.25
    INSTANCE_DOMAIN: str = "localhost"

    # Default per-user quota limits (free plan)
    DEFAULT_MONTHLY_TOKEN_LIMIT: int = 1000000
    DEFAULT_MONTHLY_COST_LIMIT: float = 50.0
    DEFAULT_MAX_CONCURRENT_CONTAINERS: int = 1
    DEFAULT_MAX_CONTAINER_MEMORY_MB: int = 512
    DEFAULT_MAX_CONTAINER_VCPU: float = 0.5
    DEFAULT_REQUESTS_PER_HOUR: int = 50
    DEFAULT_MAX_BUILDS_PER_DAY: int = 10

    # Background jobs
    MONITOR_INTERVAL_SECONDS: int = 30
    IDLE_SWEEP_INTERVAL_SECONDS: int = 60
    QUOTA_ROLLOVER_INTERVAL_MINUTES: int = 60
    DEFAULT_AUTO_SLEEP_ENABLED: bool = True
    DEFAULT_SLEEP_AFTER_MINUTES: int = 30

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def get_cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


settings = Settings()
