"""Centralized application configuration.

All settings are read from environment variables (or a .env.review
file).  Nothing is required: without GEMINI_API_KEY the analysis still
runs and every weak move gets the templated explanation.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env.review", env_file_encoding="utf-8", extra="ignore",
    )

    # Stockfish
    stockfish_path: str = "stockfish"
    stockfish_depth: int = 12
    stockfish_hash_mb: int = 128
    engine_handshake_timeout: float = 5.0
    engine_request_timeout: float = 15.0

    # Analysis
    max_moves: int = 120
    coach_batch_size: int = 10

    # Text generation (Gemini generateContent)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-3-flash-preview"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.2
    llm_timeout: float = 30.0

    # Server
    log_level: str = "info"

    @property
    def coaching_enabled(self) -> bool:
        """True when a credential for the text-generation service is set."""
        return bool(self.gemini_api_key and self.gemini_api_key.strip())
