"""Environment configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file early to ensure environment variables are set
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    vault_root: Path = Path("/vault")
    noteapi_key: str = ""
    host: str = "127.0.0.1"
    port: int = 3000
    base_url: str = "http://127.0.0.1:3000"
    log_level: str = "INFO"
    verbose_logging: bool = False
    allowed_origins: str = "app://obsidian.md"
    max_body_bytes: int = 2 * 1024 * 1024
    rate_limit: str = "300/minute"
    rate_limit_enabled: bool = True

    trash_enabled: bool = False
    file_uid: int | None = None
    file_gid: int | None = None
    file_umask: str | None = None

    meili_host: str = "http://127.0.0.1:7700"
    meili_master_key: str = ""
    meili_index: str = "notes"
    meili_timeout: float = 5.0

    watcher_enabled: bool = True
    watcher_flush_interval: float = 1.0
    watcher_summary_interval: float = 60.0
    watcher_ignored_dirs: str = ""

    reindex_chunk_size: int = 200
    index_retry_interval: float = 10.0

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse allowed origins as a list."""
        return [o.strip() for o in self.allowed_origins.split(",")]

    @property
    def watcher_ignored_dirs_list(self) -> list[str]:
        """Parse non-indexable subtrees as a list of vault-relative paths."""
        return [d.strip().strip("/") for d in self.watcher_ignored_dirs.split(",") if d.strip()]

    @property
    def file_owner(self) -> tuple[int, int] | None:
        """Owner applied to written notes, only when both ids are configured."""
        if self.file_uid is None or self.file_gid is None:
            return None
        return (self.file_uid, self.file_gid)

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.verbose_logging else self.log_level.upper()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
