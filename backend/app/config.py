"""
DialBridge - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json: bool = False

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 3000
    # Public URL the carrier uses to reach us (e.g. https://dialer.example.com).
    # When unset, the Host header of the answer request is used.
    public_base_url: Optional[str] = None

    # --- Carrier ---
    # "smartflo" = Tata Smartflo click-to-call API
    # "simulator" = accepts every dial locally (development)
    carrier_provider: str = "smartflo"
    carrier_base_url: str = "https://api-smartflo.tatateleservices.com/v1"
    carrier_api_key: str = ""
    carrier_timeout_seconds: float = 10.0
    default_country_code: str = "91"

    # --- Voice AI ---
    # "gemini" = Gemini Live (google-genai)
    # "dummy" = in-process session that never speaks (development)
    voice_session_backend: str = "gemini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    default_voice_profile: str = "Puck"
    agent_language: str = "HINGLISH"  # HINGLISH | ENGLISH
    enable_transcripts: bool = True

    # --- Media Bridge ---
    # Frames held while the AI session is connecting (20ms frames, 250 = ~5 seconds)
    frame_buffer_max_frames: int = 250
    # Bound of the per-direction handoff queues and of caller media waiting on the coordinator
    bridge_queue_max_frames: int = 200
    priming_nudge: str = (
        "The customer has just answered the phone and is listening. "
        "Greet them by name and introduce yourself now."
    )

    # --- Call Lifecycle ---
    hangup_fallback_seconds: float = 10.0
    tool_response_retries: int = 1
    call_retention_minutes: int = 5
    max_active_calls: int = 10

    # --- History & Dashboard ---
    history_max_entries: int = 1000
    system_log_max_entries: int = 200
    broadcast_queue_size: int = 100

    # --- Security ---
    allowed_origins: str = "*"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()


# Convenience export
settings = get_settings()
