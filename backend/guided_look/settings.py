import os

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_TIER_LIMITS = {"free": 200, "pro": 300, "premium": -1}
DEFAULT_CONFIRMATION_SECRET = "change-me"


class Settings(BaseSettings):
    """Global configuration for the guided look backend."""

    database_url: str = Field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    log_level: str = "INFO"

    tier_limits: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    look_credit_cost: int = 2
    edit_credit_cost: int = 2
    tryon_credit_cost: int = 4
    share_reward_credits: int = 10
    max_rewards_per_device: int = 2

    generation_timeout_seconds: float = 90.0
    tryon_timeout_seconds: float = 120.0
    session_ttl_hours: int = 12

    confirmation_secret: str = DEFAULT_CONFIRMATION_SECRET
    fingerprint_salt: str = ""

    provider: str = "dryrun"
    generation_endpoint: str = ""
    tryon_endpoint: str = ""
    provider_use_google_auth: bool = False

    model_config = SettingsConfigDict(env_prefix="GUIDED_LOOK_", extra="ignore")

    @field_validator("tier_limits")
    @classmethod
    def validate_tier_limits(cls, value: dict[str, int]) -> dict[str, int]:
        missing = set(DEFAULT_TIER_LIMITS) - set(value)
        if missing:
            raise ValueError(f"Missing tier limits for: {', '.join(sorted(missing))}")
        for tier, limit in value.items():
            if limit < -1:
                raise ValueError(f"Tier {tier} limit must be -1 (unlimited) or non-negative")
        return value

    @field_validator("look_credit_cost", "edit_credit_cost", "tryon_credit_cost", "share_reward_credits")
    @classmethod
    def validate_positive_credits(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Credit amounts must be positive")
        return value

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"dryrun", "http"}:
            raise ValueError("provider must be 'dryrun' or 'http'")
        return normalized

    @model_validator(mode="after")
    def require_real_secret_for_live_providers(self) -> "Settings":
        if self.provider != "dryrun" and self.uses_default_secret:
            raise ValueError("GUIDED_LOOK_CONFIRMATION_SECRET must be set when provider is not dryrun")
        return self

    @property
    def uses_default_secret(self) -> bool:
        return self.confirmation_secret == DEFAULT_CONFIRMATION_SECRET


settings = Settings()  # type: ignore[call-arg]
