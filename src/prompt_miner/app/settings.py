"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "prompt-miner"
    app_env: str = "dev"
    log_level: str = "INFO"
    gemini_api_key: str = ""
    extraction_model: str = "gemini-2.5-flash"
    image_model: str = "gemini-2.5-flash-image"
    library_db_path: Path = Path("data/prompt_miner.sqlite")
    share_db_path: Path = Path("data/prompt_miner_share.sqlite")
    max_upload_bytes: int = Field(default=20 * 1024 * 1024, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="PROMPT_MINER_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_gemini_api_key(self) -> str:
        return self.gemini_api_key or os.getenv("GEMINI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
