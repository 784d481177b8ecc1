from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    data_gov_in_key: str = ""
    internal_job_token: str | None = None
    data_gov_endpoint_url: str = "https://api.data.gov.in/resource/ee03643a-ee4c-48c2-ac30-9f2ff26ab722"
    data_gov_timeout_sec: float = 30.0
    data_gov_max_retries: int = 1
    data_gov_page_size: int = 100
    data_gov_requests_per_sec: float = 5.0
    records_cache_ttl_sec: int = 3600
    states_cache_ttl_sec: int = 86400
    cache_max_entries: int = 1024
    fallback_periods: str = "2023-2024,2022-2023,2021-2022"
    latest_period: str = "2024-2025"
    auto_apply_schema: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @property
    def fallback_period_list(self) -> list[str]:
        return [p.strip() for p in self.fallback_periods.split(",") if p.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
