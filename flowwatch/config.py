"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowwatch.errors import WorkspaceError

VERBOSITY_LEVELS = ("all", "important", "errors-only")


class Settings(BaseSettings):
    """Supervisor settings sourced from .env / environment (FLOWWATCH_*)."""

    model_config = SettingsConfigDict(
        env_prefix="FLOWWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    env: str = "development"
    log_level: str = "INFO"

    # ── Files ────────────────────────────────────────────────────────
    workspace_dir: Path = Path(".oss")
    log_file: str = "workflow.log"
    queue_file: str = "queue.json"
    state_file: str = "supervisor-state.json"
    offset_file: str = "log-offset.json"
    archive_file: str = "queue-expired.json"

    # ── Timing ───────────────────────────────────────────────────────
    poll_interval_seconds: float = 0.5
    tick_interval_seconds: float = 15.0
    read_timeout_seconds: float = 5.0
    max_read_bytes: int = 1024 * 1024

    # ── Detection ────────────────────────────────────────────────────
    loop_threshold: int = Field(default=3, ge=2)
    phase_timeout_seconds: float = 240.0
    phase_timeouts: dict[str, float] = Field(default_factory=dict)
    silence_seconds: float = 90.0
    abrupt_stop_seconds: float = 150.0
    agent_silence_seconds: float = 50.0
    agent_abandon_seconds: float = 90.0
    milestone_interval_seconds: float = 180.0
    velocity_factor: float = 2.0
    command_chain: list[str] = Field(default_factory=lambda: ["ideate", "plan", "build", "ship"])
    chain_prerequisites: dict[str, list[str]] = Field(
        default_factory=lambda: {"build": ["plan", "ideate"], "ship": ["build"]}
    )
    phase_order: dict[str, list[str]] = Field(
        default_factory=lambda: {"build": ["red", "green", "refactor"]}
    )
    expected_milestones: dict[str, int] = Field(
        default_factory=lambda: {"red": 1, "green": 1, "refactor": 0}
    )
    output_commands: list[str] = Field(default_factory=lambda: ["ideate", "plan", "build"])
    test_phase: str = "red"
    implementation_phase: str = "green"

    # ── Confidence thresholds ────────────────────────────────────────
    auto_remediate_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    notify_suggest_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    # ── Queue ────────────────────────────────────────────────────────
    queue_expiry_hours: float = 24.0
    queue_max_size: int = 50
    source: str = "log-monitor"

    # ── Notifications ────────────────────────────────────────────────
    notify_verbosity: str = "important"
    notify_webhook_url: str = ""
    notify_timeout_seconds: float = 3.0
    replay_notify: bool = False

    # ── Webhook ingress ──────────────────────────────────────────────
    webhook_secret: str = ""
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 3456
    webhook_rate_limit: int = 10
    webhook_rate_window_seconds: float = 60.0

    @field_validator("notify_verbosity")
    @classmethod
    def _check_verbosity(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in VERBOSITY_LEVELS:
            raise ValueError(f"notify_verbosity must be one of {', '.join(VERBOSITY_LEVELS)}")
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.notify_suggest_threshold > self.auto_remediate_threshold:
            raise ValueError("notify_suggest_threshold cannot exceed auto_remediate_threshold")
        return self

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def log_path(self) -> Path:
        return self.workspace_dir / self.log_file

    @property
    def queue_path(self) -> Path:
        return self.workspace_dir / self.queue_file

    @property
    def state_path(self) -> Path:
        return self.workspace_dir / self.state_file

    @property
    def offset_path(self) -> Path:
        return self.workspace_dir / self.offset_file

    @property
    def archive_path(self) -> Path:
        return self.workspace_dir / self.archive_file

    def ensure_workspace(self) -> Path:
        """Create the working directory, raising WorkspaceError if impossible."""
        try:
            self.workspace_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceError(f"Cannot create workspace {self.workspace_dir}: {exc}") from exc
        return self.workspace_dir


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
