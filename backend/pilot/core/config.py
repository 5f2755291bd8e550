from pydantic_settings import BaseSettings
from typing import Any, List
import json
from pathlib import Path


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Pilot Sandbox Orchestrator"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_VERSION: str = "v1"

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # CORS (stored as comma-separated string, parsed to list)
    CORS_ORIGINS_STR: str = "http://localhost:3000,http://127.0.0.1:3000"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return parse_cors_origins(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables the rotating file handler

    # ==========================================
    # Docker
    # ==========================================
    DOCKER_HOST: str = ""  # Empty means use the local socket / environment
    DOCKER_TLS_ENABLED: bool = False
    DOCKER_TLS_CA_CERT: str = ""
    DOCKER_TLS_CLIENT_CERT: str = ""
    DOCKER_TLS_CLIENT_KEY: str = ""
    DOCKER_CLIENT_TIMEOUT: int = 60

    # ==========================================
    # Sandbox Image & Containers
    # ==========================================
    SANDBOX_IMAGE: str = "pilot-agent:latest"
    SANDBOX_DOCKERFILE: str = "Dockerfile.agent"
    SANDBOX_BUILD_CONTEXT: str = str(Path(__file__).resolve().parent.parent.parent.parent)

    CONTAINER_NAME_PREFIX: str = "pilot-session-"
    CONTAINER_MEMORY_LIMIT: str = "2g"  # Swap is capped at the same value
    CONTAINER_CPU_PERIOD: int = 100000
    CONTAINER_CPU_QUOTA: int = 200000  # 2 CPUs
    CONTAINER_NETWORK_MODE: str = "bridge"
    CONTAINER_STOP_TIMEOUT: int = 10  # Grace period before force removal
    ORPHAN_STOP_TIMEOUT: int = 5

    WORKSPACE_DIR: str = "/workspace"
    REPO_DIR: str = "/workspace/repo"
    DEV_SERVER_LOG: str = "/tmp/dev-server.log"

    # Passed into the sandbox for `gh repo clone`
    GITHUB_TOKEN: str = ""

    # ==========================================
    # Preview & Readiness
    # ==========================================
    PREVIEW_HOST: str = "localhost"
    PREVIEW_CONTAINER_PORT: int = 3000
    PREVIEW_PORT_FLOOR: int = 3001
    PORT_CLAIM_RETRIES: int = 3

    READINESS_ATTEMPTS: int = 30
    READINESS_INTERVAL_SECONDS: float = 1.0
    READINESS_REQUEST_TIMEOUT: float = 2.0

    # ==========================================
    # Session & Progress Retention
    # ==========================================
    SESSION_CLEANUP_ENABLED: bool = True
    SESSION_MAX_INACTIVITY_SECONDS: int = 3600  # 1 hour
    SESSION_SWEEP_INTERVAL_SECONDS: int = 300  # 5 minutes
    PROGRESS_RETENTION_SECONDS: int = 300  # 5 minutes, regardless of completion

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings


# Create settings instance
settings = Settings()
