from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TOKEN_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    debug: bool = False
    service_name: str = "token-ledger"
    cors_origins_raw: str = Field(default="*", alias="TOKEN_LEDGER_CORS_ORIGINS")

    # Ledger policy
    token_symbol: str = "VDO"
    starting_grant: Decimal = Decimal("1000")
    minimum_stake: Decimal = Decimal("100")
    daily_reward_amount: Decimal = Decimal("100")
    amount_scale: int = 2

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    @property
    def cors_origins(self) -> list[str]:
        return [x.strip() for x in self.cors_origins_raw.split(",") if x.strip()] or ["*"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
