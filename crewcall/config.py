from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    coalesce_window_seconds: float = 30.0
    push_gateway_url: str | None = None
    push_timeout_seconds: float = 5.0
    low_battery_threshold: int = 20
    log_level: str = "INFO"
    log_json: bool = False
    seed_path: str | None = None

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="CREWCALL_", case_sensitive=False
    )


settings = Settings()
