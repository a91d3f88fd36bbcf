import json
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pause_lock.utils.paths import get_default_data_dir, get_default_log_dir


class Settings(BaseSettings):
    """Application-wide settings managed via .env and config.json."""

    app_name: str = "pause_lock"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)

    def model_post_init(self, __context):
        # Ensure paths are absolute
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def store_file(self) -> Path:
        return self.data_dir / "store.json"

    @property
    def enforcement_file(self) -> Path:
        return self.data_dir / "enforcement.json"

    @property
    def permission_file(self) -> Path:
        return self.data_dir / "permission.json"

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def command_dir(self) -> Path:
        return self.data_dir / "commands"

    @property
    def response_dir(self) -> Path:
        return self.data_dir / "responses"

    # Timing
    tick_interval_seconds: float = 5.0
    daemon_poll_seconds: float = 1.0
    scan_timeout_seconds: float = 30.0
    command_timeout_seconds: float = 10.0

    # Arbitration
    tags_preempt_profiles: bool = Field(
        default=True,
        description="A scanned tag replaces an enforcing time profile instead of being refused",
    )

    # Notifications
    notify_summary: str = "Time profile starting"
    notify_body: str = "'{name}' starts blocking at {start_time}."

    model_config = SettingsConfigDict(
        env_prefix="PAUSE_LOCK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def save(self):
        """Saves current settings to config.json in data_dir."""
        config_path = self.data_dir / "config.json"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        with open(config_path, "w") as f:
            json.dump(data, f, indent=4)


_last_settings_mtime: float | None = None
_cached_settings: Settings | None = None


def load_settings() -> Settings:
    """Loads settings, merging with config.json if it exists."""
    global _last_settings_mtime, _cached_settings

    initial = Settings()
    config_path = initial.data_dir / "config.json"

    if not config_path.exists():
        _last_settings_mtime = None
        _cached_settings = initial
        return initial

    current_mtime = config_path.stat().st_mtime
    if (
        _last_settings_mtime == current_mtime
        and _cached_settings is not None
        and _cached_settings.data_dir == initial.data_dir
    ):
        return _cached_settings

    try:
        with open(config_path) as f:
            config_data = json.load(f)
        _cached_settings = Settings(**{**initial.model_dump(), **config_data})
        _last_settings_mtime = current_mtime
        return _cached_settings
    except Exception:
        _cached_settings = initial
        return initial


settings = load_settings()
