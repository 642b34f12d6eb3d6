# core/settings.py
"""
Environment-driven configuration for the chess coach.

Every value can be overridden with an environment variable of the same name
in upper case. Components receive a Settings instance explicitly; the module
level `settings` object is only used by the entry points.
"""

import logging
import os
from pathlib import Path
from typing import List

from pydantic import BaseModel

_core_dir = Path(__file__).resolve().parent


class Settings(BaseModel):
    # Ollama (vision + coaching)
    ollama_host: str = os.getenv("OLLAMA_HOST", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "gemma3:4b")
    ollama_vision_model: str = os.getenv("OLLAMA_VISION_MODEL", "gemma3:4b")
    coaching_temperature: float = float(os.getenv("COACHING_TEMPERATURE", "0.3"))
    vision_temperature: float = float(os.getenv("VISION_TEMPERATURE", "0.1"))
    ai_timeout_s: float = float(os.getenv("AI_TIMEOUT_S", "60"))
    prompts_dir: str = os.getenv("PROMPTS_DIR", str(_core_dir / "prompts"))

    # chess-api.com engine
    chess_api_url: str = os.getenv("CHESS_API_URL", "https://chess-api.com/v1")
    engine_timeout_s: float = float(os.getenv("ENGINE_TIMEOUT_S", "5"))
    engine_max_concurrency: int = int(os.getenv("ENGINE_MAX_CONCURRENCY", "4"))
    engine_variants: int = int(os.getenv("ENGINE_VARIANTS", "1"))
    engine_max_thinking_time_ms: int = int(os.getenv("ENGINE_MAX_THINKING_TIME_MS", "50"))

    # Players below this rating never get LLM-generated tactics.
    beginner_bypass_elo: int = int(os.getenv("BEGINNER_BYPASS_ELO", "600"))

    # HTTP
    max_upload_bytes: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    cors_origins: str = os.getenv("CORS_ORIGINS", "https://www.chess.com,https://chess.com")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def cors_origin_list(self) -> List[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def prompt_path(self, name: str) -> str:
        return os.path.join(self.prompts_dir, name)


def configure_logging(level: str = "INFO") -> None:
    """Set up root logging once for an entry point (CLI or API)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
