from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./ghostwriter.db"
    environment: str = "development"
    log_level: str = "INFO"
    auto_create_schema: bool = True
    cors_origins: list[str] = ["http://localhost:3000"]

    openai_api_key: str = ""
    openai_base_url: str | None = None
    realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_model: str = "gpt-realtime"
    transcription_model: str = "gpt-4o-mini-transcribe"
    drafting_model: str = "gpt-4.1-mini"
    drafting_temperature: float = 0.4

    channel_open_timeout_seconds: float = 5.0
    media_grant_timeout_seconds: float = 30.0
    heartbeat_interval_seconds: float = 30.0
    instructions_debounce_seconds: float = 0.05
    handled_tool_call_limit: int = 100
    connection_log_limit: int = 40
    server_event_log_limit: int = 50
    project_listing_limit: int = 20
    draft_dedupe_window_seconds: int = 90
    draft_max_attempts: int = 3
    draft_retry_delay_seconds: float = 2.0
    draft_sweep_interval_seconds: float = 30.0
    draft_sweep_batch_size: int = 5

    default_language: str = "en-US"
    default_noise_profile: str = "near_field"
    default_turn_detection: str = "server_vad"

    class Config:
        env_file = ".env"


settings = Settings()
