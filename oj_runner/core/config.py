import os
import sys
import tempfile

from pydantic import ValidationError as SettingsValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from oj_runner.core.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./oj_runner.db")

    # Logical table names; no defaults, a missing one is a startup error
    PROBLEMS_TABLE: str
    SUBMISSIONS_TABLE: str

    # Celery configuration
    CELERY_BROKER_URL: str = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/1")
    CELERY_RESULT_BACKEND: str = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")
    WORKER_OBSERVABILITY: bool = True
    WORKER_METRICS_PORT: int = int(os.getenv("WORKER_METRICS_PORT", "9101"))

    # Submissions this runner accepts (comma separated)
    SUPPORTED_LANGUAGES: str = os.getenv("SUPPORTED_LANGUAGES", "python")

    # Interpreter used both for compiling and for running artifacts.
    # Must match the service interpreter: .pyc files carry its magic number.
    PYTHON_EXECUTABLE: str = os.getenv("PYTHON_EXECUTABLE", sys.executable or "python3")

    # Scratch workspaces
    WORKSPACE_ROOT: str = os.getenv("WORKSPACE_ROOT", tempfile.gettempdir())
    WORKSPACE_PREFIX: str = os.getenv("WORKSPACE_PREFIX", "judge-")

    # Execution limits
    RUN_TIMEOUT_SECONDS: float = float(os.getenv("RUN_TIMEOUT_SECONDS", "5"))
    INVOCATION_TIMEOUT_SECONDS: float = float(os.getenv("INVOCATION_TIMEOUT_SECONDS", "30"))
    RUN_MEMORY_LIMIT_MB: int = int(os.getenv("RUN_MEMORY_LIMIT_MB", "256"))
    RUN_MAX_FILE_BYTES: int = int(os.getenv("RUN_MAX_FILE_BYTES", str(10 * 1024 * 1024)))
    RUN_MAX_OPEN_FILES: int = int(os.getenv("RUN_MAX_OPEN_FILES", "64"))
    # Captured stdout above this is a failure; pipes are not covered by RLIMIT_FSIZE
    RUN_MAX_OUTPUT_BYTES: int = int(os.getenv("RUN_MAX_OUTPUT_BYTES", str(8 * 1024 * 1024)))

    # Sandbox backend: "process" (local child process) or "docker"
    SANDBOX_BACKEND: str = os.getenv("SANDBOX_BACKEND", "process")
    SANDBOX_IMAGE: str = os.getenv(
        "SANDBOX_IMAGE", f"python:{sys.version_info.major}.{sys.version_info.minor}-slim"
    )
    DOCKER_SOCKET: str = os.getenv("DOCKER_SOCKET", "unix:///var/run/docker.sock")
    SANDBOX_PIDS_LIMIT: int = int(os.getenv("SANDBOX_PIDS_LIMIT", "50"))
    SANDBOX_CPU_QUOTA: int = int(os.getenv("SANDBOX_CPU_QUOTA", "50000"))

    @property
    def supported_languages(self) -> set[str]:
        return {lang.strip().lower() for lang in self.SUPPORTED_LANGUAGES.split(",") if lang.strip()}


def load_settings() -> Settings:
    try:
        return Settings()
    except SettingsValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ConfigurationError(f"Invalid or missing settings: {', '.join(missing)}") from e


settings = load_settings()
