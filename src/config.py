from __future__ import annotations

from functools import cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.aggregation_rules import AggregatorConfig


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///ledger_aggregation.db"
    database_echo: bool = False
    page_size: int = 100
    aggregation: AggregatorConfig = Field(default_factory=AggregatorConfig)

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_AGG_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@cache
def config() -> AppSettings:
    return AppSettings()
