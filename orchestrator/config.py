"""Orchestrator configuration settings."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LoopPrecedence(str, Enum):
    """How an infinite loop request interacts with a configured duration."""
    INFINITE_WINS = "infinite_wins"
    SCHEDULER_WINS = "scheduler_wins"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Stress Orchestrator"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8082

    # Data storage
    data_path: Path = Field(default=Path("./data"))
    use_cases_file: Optional[Path] = None  # YAML use case definitions imported at startup

    # JMeter
    jmeter_path: str = "/opt/jmeter/bin/jmeter.sh"
    jmeter_alternative_paths: str = ""  # comma separated
    jmeter_remote_enabled: bool = False
    jmeter_remote_host: Optional[str] = None

    # Directory the engine host reads CSV data files from
    csv_server_dir: Optional[str] = None

    # Execution settings
    run_timeout_seconds: float = 1800  # hard cap per run
    default_duration_seconds: int = 300
    min_ramp_up_seconds: int = 60
    loop_precedence: LoopPrecedence = LoopPrecedence.INFINITE_WINS

    # Cancellation
    stop_grace_seconds: float = 5.0
    stop_kill_wait_seconds: float = 5.0
    sweep_wait_seconds: float = 3.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # CORS
    cors_origins: list[str] = ["*"]

    class Config:
        env_prefix = "STRESS_"
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def database_path(self) -> Path:
        return self.data_path / "stress.db"

    @property
    def jmx_path(self) -> Path:
        return self.data_path / "jmx"

    @property
    def csv_path(self) -> Path:
        return self.data_path / "csv"

    @property
    def results_path(self) -> Path:
        return self.data_path / "results"

    @property
    def reports_path(self) -> Path:
        return self.data_path / "reports"

    @property
    def logs_path(self) -> Path:
        return self.data_path / "logs"

    @property
    def engine_csv_dir(self) -> str:
        """Directory CSV references are rewritten under."""
        if self.csv_server_dir:
            return self.csv_server_dir.rstrip("/\\")
        return str(self.csv_path.resolve())

    @property
    def alternative_jmeter_paths(self) -> list[str]:
        return [p.strip() for p in self.jmeter_alternative_paths.split(",") if p.strip()]


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def init_settings(**kwargs) -> Settings:
    """Initialize settings with custom values."""
    global _settings
    _settings = Settings(**kwargs)
    return _settings
