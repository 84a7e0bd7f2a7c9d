from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    backend_api_url: str = "http://localhost:3001/api"
    backend_timeout_seconds: float = 15.0
    frontend_url: str = "http://localhost:5173"
    documents_dir: str = "./data/documents"
    log_level: str = "INFO"

    # Fixed fee defaults used when nothing was saved for the project
    default_initial_fee: float = 1000.0
    default_final_fee: float = 1000.0
    # Derive the fee defaults from the company's percent/min/max columns instead
    use_company_fee_defaults: bool = False

    @property
    def resolved_documents_dir(self) -> Path:
        path = Path(self.documents_dir)
        if path.is_absolute():
            return path
        return Path(__file__).resolve().parents[2] / path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
