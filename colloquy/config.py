"""Settings via pydantic-settings with COLLOQUY_ env prefix.

Scheduler and credential fields use validation_alias to read the same
unprefixed env vars (FORECAST_INTERVAL_MINUTES, OPENAI_API_KEY, etc.) the
deployment already exports, so one .env file drives every component.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env")

    # Storage: embedded SQLite by default, any async SQLAlchemy URL works
    database_url: str = Field(
        "sqlite+aiosqlite:///agents.db", validation_alias="DATABASE_URL"
    )
    db_echo: bool = False
    log_level: str = "info"

    # LLM transport (OpenAI-compatible chat completions)
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    api_base_url: str = "https://api.openai.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    model: str = "gpt-4o"
    compaction_model: str = "gpt-4o-mini"
    comparison_model: str = "gpt-4o-mini"
    judge_model: str = "gpt-4o"
    max_tokens: int = 4096
    max_tool_rounds: int = 8  # Max tool use iterations per turn

    # Turn processing
    compaction_period: int = 11  # K: compact when prompt+response count % K == 0
    default_temperature: float = 0.7
    temperature_min: float = 0.0
    temperature_max: float = 2.0
    turn_timeout: float = 180.0  # seconds a turn may hold its chat lock
    prompt_cache_max_entries: int = 1024  # LRU bound on cached prompts

    # Scheduler: unprefixed aliases match the deployment env
    scheduled_task_enabled: bool = Field(True, validation_alias="SCHEDULED_TASK_ENABLED")
    forecast_interval_minutes: float = Field(60, validation_alias="FORECAST_INTERVAL_MINUTES")
    summary_interval_hours: float = Field(3, validation_alias="SUMMARY_INTERVAL_HOURS")
    forecast_location: str = Field("California", validation_alias="FORECAST_LOCATION")
    forecast_agent_id: str = Field("weather-collector", validation_alias="FORECAST_AGENT_ID")
    summary_agent_id: str = Field("weather-summarizer", validation_alias="SUMMARY_AGENT_ID")
    oliver_agent_id: str = Field("Oliver", validation_alias="OLIVER_AGENT_ID")
    oliver_chat_id: str = Field("-1", validation_alias="OLIVER_CHAT_ID")
    collector_chat_id: str = "weather-collector-chat"
    summarizer_chat_id: str = "weather-summarizer-chat"

    # External tool servers, one stdio command line per entry
    mcp_servers: list[str] = []

    @model_validator(mode="after")
    def _validate_ranges(self) -> "Settings":
        if self.compaction_period < 2:
            raise ValueError("compaction_period must be >= 2")
        if self.temperature_min > self.temperature_max:
            raise ValueError(
                f"temperature_min ({self.temperature_min}) must be <= "
                f"temperature_max ({self.temperature_max})"
            )
        if self.turn_timeout <= 0:
            raise ValueError("turn_timeout must be positive")
        if self.prompt_cache_max_entries < 1:
            raise ValueError("prompt_cache_max_entries must be >= 1")
        return self

    def clamp_temperature(self, value: float | None) -> float:
        """Clamp a requested temperature into the supported range."""
        if value is None:
            value = self.default_temperature
        return max(self.temperature_min, min(self.temperature_max, float(value)))

    @property
    def collector_interval_seconds(self) -> float:
        return self.forecast_interval_minutes * 60

    @property
    def aggregator_interval_seconds(self) -> float:
        return self.summary_interval_hours * 60 * 60

    @property
    def scheduler_agent_ids(self) -> frozenset[str]:
        """Agents driven by the scheduler rather than by a human."""
        return frozenset({self.forecast_agent_id, self.summary_agent_id})
