"""Library settings via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from modelkit.services.oauth import OAuthConfiguration


def _default_documents_dir() -> Path:
    return Path.home() / "Documents"


class Settings(BaseSettings):
    """Configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    debug: bool = False

    # Store
    documents_dir: Path = Field(
        default_factory=_default_documents_dir,
        validation_alias=AliasChoices("MODELKIT_DOCUMENTS_DIR", "DOCUMENTS_DIR"),
    )
    database_path: str = Field(
        default="database.sqlite",
        validation_alias=AliasChoices("MODELKIT_DATABASE_PATH", "DATABASE_PATH"),
    )
    sqlite_journal_mode: str = Field(
        default="DELETE",
        validation_alias=AliasChoices("SQLITE_JOURNAL_MODE"),
    )

    @field_validator("sqlite_journal_mode")
    @classmethod
    def _check_journal_mode(cls, v: str) -> str:
        mode = v.strip().upper()
        if mode not in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}:
            raise ValueError(f"Unsupported SQLite journal mode: {v}")
        return mode

    # Backend
    backend_base_url: str = Field(
        default="",
        validation_alias=AliasChoices("BACKEND_BASE_URL", "API_BASE_URL"),
    )
    backend_timeout: float = Field(
        default=30.0,
        validation_alias=AliasChoices("BACKEND_TIMEOUT"),
        gt=0.0,
    )
    backend_debug: bool = Field(
        default=False,
        validation_alias=AliasChoices("BACKEND_DEBUG"),
        description="If True, log full backend response JSON for debugging",
    )

    # OAuth (optional)
    oauth_client_id: str = Field(default="", validation_alias=AliasChoices("OAUTH_CLIENT_ID"))
    oauth_client_secret: str = Field(default="", validation_alias=AliasChoices("OAUTH_CLIENT_SECRET"))
    oauth_base_url: str = Field(default="", validation_alias=AliasChoices("OAUTH_BASE_URL"))
    oauth_login_path: str = Field(default="oauth/authorize", validation_alias=AliasChoices("OAUTH_LOGIN_PATH"))
    oauth_register_path: str | None = Field(default=None, validation_alias=AliasChoices("OAUTH_REGISTER_PATH"))
    oauth_token_path: str = Field(default="oauth/token", validation_alias=AliasChoices("OAUTH_TOKEN_PATH"))
    oauth_redirect_url: str = Field(default="", validation_alias=AliasChoices("OAUTH_REDIRECT_URL"))

    @property
    def oauth_configuration(self) -> OAuthConfiguration | None:
        """OAuth client configuration, or None when no client is configured."""
        if not self.oauth_client_id or not self.oauth_base_url:
            return None
        return OAuthConfiguration(
            client_id=self.oauth_client_id,
            client_secret=self.oauth_client_secret,
            base_url=self.oauth_base_url,
            login_path=self.oauth_login_path,
            register_path=self.oauth_register_path or None,
            token_path=self.oauth_token_path,
            redirect_url=self.oauth_redirect_url,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
