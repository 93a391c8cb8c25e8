# backend/ram_api/settings.py
import os
from functools import lru_cache
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]


class ProcessSettings(BaseModel):
    """How to launch the external program behind one task."""

    service: Literal["docker", "local"] = "docker"
    container: Optional[str] = None
    command: List[str] = Field(default_factory=list)
    # extra environment handed to the job (db uri, storage host, ...)
    env: Dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Backend configuration loaded from ``RAM_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RAM_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "RAM backend"
    log_level: LogLevel = "INFO"
    host: str = "0.0.0.0"
    port: int = 4000

    database_url: str = f"sqlite:///{os.path.join(BASE_DIR, 'database.db')}"
    storage_dir: str = os.path.join(BASE_DIR, "storage")

    # Start and log operations but never launch the external jobs.
    dry_run: bool = False
    # Claim a unique marker per (type, project, scenario) when starting.
    atomic_start: bool = True

    scenario_process: ProcessSettings = Field(
        default_factory=lambda: ProcessSettings(service="local")
    )
    analysis_process: ProcessSettings = Field(
        default_factory=lambda: ProcessSettings(
            container="wbtransport/rra-analysis:latest-stable"
        )
    )
    vt_process: ProcessSettings = Field(
        default_factory=lambda: ProcessSettings(
            container="wbtransport/rra-vt:latest-stable"
        )
    )

    def process_for(self, task_name: str) -> ProcessSettings:
        processes = {
            "scenario-create": self.scenario_process,
            "generate-analysis": self.analysis_process,
            "generate-vector-tiles": self.vt_process,
        }
        try:
            return processes[task_name]
        except KeyError:
            raise ValueError(f"Unknown task: {task_name}") from None


@lru_cache
def get_settings() -> Settings:
    return Settings()
