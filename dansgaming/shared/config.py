"""Application configuration loaded from the environment.

Settings are read once through pydantic-settings and cached by
``get_settings``. Variable names are case-insensitive, so ``DISCORD_GUILD_ID``
populates ``discord_guild_id``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import List

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "your-secret-key"


class Settings(BaseSettings):
    """Runtime configuration for the staff portal."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    log_level: str = "INFO"
    verbose_errors_enabled: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///./database.sqlite"
    database_echo: bool = False

    # Session tokens
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24

    # Discord OAuth2
    discord_client_id: str = ""
    discord_client_secret: str = ""
    discord_redirect_uri: str = "https://dansgaming.net/api/discord-auth/callback"
    discord_oauth_scopes: str = "identify guilds.members.read"
    allowed_roles: str = ""

    # Discord bot access
    discord_guild_id: str = ""
    discord_bot_token: str = ""
    discord_api_base: str = "https://discord.com/api/v10"
    discord_timeout: float = 10.0
    discord_max_retries: int = 3
    discord_page_delay: float = 0.1

    # Staff rank role ids
    founder_role_id: str = "1394520034700693534"
    management_role_id: str = "765079181666156545"
    admin_role_id: str = "885301651538329651"
    retired_role_id: str = "761356380363816961"

    # Roster
    member_cache_ttl: float = 300.0
    fallback_staff_id: str = "1394520034700693534"
    fallback_staff_username: str = "BigDan"
    fallback_staff_rank: str = "Founder"

    # Front end redirect targets
    admin_redirect_path: str = "/admin"
    staff_login_path: str = "/staff-login"

    # Inbound rate limiting
    rate_limit: str = "100/15minutes"
    rate_limit_enabled: bool = True

    @model_validator(mode="after")
    def require_jwt_secret_in_production(self) -> "Settings":
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise ValueError("JWT_SECRET must be set in production")
        return self

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "local")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    @property
    def allowed_role_ids(self) -> List[str]:
        """Role ids allowed to sign in, parsed from ``ALLOWED_ROLES``."""
        return [role.strip() for role in self.allowed_roles.split(",") if role.strip()]

    def missing_discord_config(self) -> List[str]:
        missing = []
        if not self.discord_guild_id:
            missing.append("DISCORD_GUILD_ID")
        if not self.discord_bot_token:
            missing.append("DISCORD_BOT_TOKEN")
        return missing


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging from ``LOG_LEVEL``."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger(__name__).info(
        "Log level %s enabled", logging.getLevelName(level)
    )
