"""Settings via pydantic-settings with RELAY_ env prefix.

Provider credential fields use validation_alias to read the same
unprefixed env vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, etc.) that the
provider SDKs and CLIs use, so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ThinkLevel = Literal["off", "minimal", "low", "medium", "high", "xhigh"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAY_", env_file=".env", populate_by_name=True)

    log_level: str = "info"

    # Provider credentials use the unprefixed provider env var names
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")
    # Extra per-provider keys, e.g. RELAY_PROVIDER_API_KEYS='{"openrouter": "..."}'
    provider_api_keys: dict[str, str] = Field(default_factory=dict)

    # Model selection
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-5"
    model_api: str = "anthropic-messages"
    base_url: str | None = None
    max_tokens: int = 4096
    context_window_tokens: int = 200_000

    # Reasoning
    think_level: ThinkLevel = "off"

    # Tool loop ceiling per run (model call -> tools -> model call).
    # Tunable: multi-file edit tasks routinely need tens of steps.
    max_steps: int = 50

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    run_timeout_seconds: float = 600.0  # 0 disables the run timeout

    # Tool results
    tool_result_max_bytes: int = 200_000

    # History limiting (user turns kept per session kind; None = unlimited)
    default_history_limit: int | None = None
    history_turn_limits: dict[str, int] = Field(default_factory=dict)

    # Compaction
    compaction_mode: str = "default"
    compaction_keep_recent_tokens: int = 20_000
    compaction_model: str | None = None

    # Session persistence
    sessions_dir: str = "/tmp/relay-sessions"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.context_window_tokens < 1:
            raise ValueError("context_window_tokens must be >= 1")
        if self.tool_result_max_bytes < 1024:
            raise ValueError("tool_result_max_bytes must be >= 1024")
        return self

    def history_limit_for(self, session_kind: str | None) -> int | None:
        """Return the user-turn limit for a session kind (dm, group, ...)."""
        if session_kind and session_kind in self.history_turn_limits:
            return self.history_turn_limits[session_kind]
        return self.default_history_limit
