"""
Application Configuration using Pydantic Settings

Loads configuration from environment variables with sensible defaults.
"""

from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_DEBUG: bool = True
    APP_RELOAD: bool = False

    # ========================================================================
    # Backend Selection
    # ========================================================================
    # "memory" runs everything in-process with a simulated container service.
    # "aws" uses ECS for workers, DynamoDB for scenarios/history and S3 for
    # per-worker result artifacts.
    STORAGE_BACKEND: str = "memory"

    # ========================================================================
    # Fleet Settings
    # ========================================================================
    MAX_FLEET_SIZE: int = 100
    # The container service accepts at most 10 tasks per launch call.
    LAUNCH_BATCH_SIZE: int = 10
    LAUNCH_RETRY_ATTEMPTS: int = 3
    LAUNCH_RETRY_DELAY_SECONDS: float = 1.0
    # Runs that launch fewer than this fraction of requested workers are
    # failed (and any launched workers stopped). 0.0 proceeds degraded as long
    # as a single worker started.
    MIN_LIVE_WORKER_FRACTION: float = 0.0

    WORKER_IMAGE: str = "loadbench/load-tester:latest"
    WORKER_CPU: str = "2048"
    WORKER_MEMORY: str = "4096"

    # ========================================================================
    # Run Lifecycle Settings
    # ========================================================================
    POLL_INTERVAL_SECONDS: float = 5.0
    TIMEOUT_GRACE_SECONDS: float = 300.0
    STATUS_FAILURE_LIMIT: int = 5
    CANCEL_GRACE_SECONDS: float = 120.0
    PERSIST_RETRY_ATTEMPTS: int = 3
    ARTIFACT_RETRY_ATTEMPTS: int = 3

    # ========================================================================
    # AWS Settings (STORAGE_BACKEND=aws)
    # ========================================================================
    AWS_REGION: str = "us-east-1"
    SCENARIOS_TABLE: str = "loadbench-scenarios"
    HISTORY_TABLE: str = "loadbench-history"
    SCENARIOS_BUCKET: str = "loadbench-scenarios"
    ECS_CLUSTER: str = "loadbench"
    ECS_TASK_DEFINITION: str = "loadbench-load-tester"
    ECS_CONTAINER_NAME: str = "load-tester"
    # Comma-separated subnet ids.
    ECS_SUBNETS: str = ""
    ECS_SECURITY_GROUP: str = ""

    # ========================================================================
    # Telemetry / WebSocket Settings
    # ========================================================================
    TELEMETRY_QUEUE_SIZE: int = 1000
    WS_PING_INTERVAL: int = 30

    # ========================================================================
    # Security Settings
    # ========================================================================
    CORS_ORIGINS: List[str] = []

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _build_cors_origins(cls, v, info):
        if v:
            if isinstance(v, str):
                import json

                return json.loads(v)
            return v
        host = info.data.get("APP_HOST", "127.0.0.1")
        port = info.data.get("APP_PORT", 8000)
        origins = [f"http://{host}:{port}"]
        if host == "127.0.0.1":
            origins.append(f"http://localhost:{port}")
        elif host == "localhost":
            origins.append(f"http://127.0.0.1:{port}")
        return origins

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: str = "INFO"
    # Prefixed with uvicorn's coloured level name.
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(message)s"


# Create global settings instance
settings = Settings()
