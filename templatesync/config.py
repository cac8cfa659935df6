"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """templatesync settings."""

    model_config = SettingsConfigDict(
        env_prefix="TEMPLATESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Upstream
    release_url: str = ""
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    allow_insecure_http: bool = False

    # Project layout
    state_dir_name: str = Field(default=".templatesync", min_length=1)
    tracked_dirs: list[str] = Field(default_factory=list)

    # Conflict artifacts
    conflict_threshold_lines: int = Field(default=100, ge=1)
    diff_context_lines: int = Field(default=3, ge=0)

    # Safety net
    backup_retention: int = Field(default=5, ge=1)
    allow_no_backup: bool = False
    require_clean_git: bool = True

    def validate_layout(self) -> None:
        """Reject state directory names that could escape the project root."""
        name = self.state_dir_name
        if name in {".", ".."} or "/" in name or "\\" in name:
            raise ValueError(f"state_dir_name must be a single directory name, got {name!r}")
        for tracked in self.tracked_dirs:
            parts = tracked.replace("\\", "/").split("/")
            if tracked.startswith("/") or ".." in parts:
                raise ValueError(f"tracked_dirs entries must be relative paths, got {tracked!r}")
            if parts[0] == name:
                raise ValueError(f"tracked_dirs must not include the state directory: {tracked!r}")
