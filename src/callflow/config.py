"""
Configuration management for the call flow agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.callflow.errors import CallflowError
from src.callflow.prompts import DEFAULT_GREETING

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(CallflowError):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    recording_enabled: bool = False
    transfer_number: str = ""
    payment_number: str = ""

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2"
    deepgram_endpointing_ms: int = 200
    deepgram_utterance_end_ms: int = 1000
    deepgram_tts_model: str = "aura-asteria-en"

    # LLM Provider (OpenAI/Groq)
    # - Groq is reached through its OpenAI-compatible endpoint.
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # Conversation
    greeting: str = DEFAULT_GREETING
    pause_marker: str = "•"
    min_interruption_chars: int = 5
    max_tool_rounds: int = 5
    tool_timeout_seconds: float = 10.0

    @property
    def ws_url(self) -> str:
        """Get the Media Streams WebSocket URL."""
        return f"wss://{self.public_host}/connection"

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if not self.pause_marker:
            raise ConfigError("PAUSE_MARKER must not be empty.")
        if self.max_tool_rounds < 1:
            raise ConfigError("MAX_TOOL_ROUNDS must be at least 1.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            deepgram_stt_model=self.deepgram_stt_model,
            deepgram_tts_model=self.deepgram_tts_model,
            recording_enabled=self.recording_enabled,
            min_interruption_chars=self.min_interruption_chars,
            max_tool_rounds=self.max_tool_rounds,
            tool_timeout_seconds=self.tool_timeout_seconds,
            transfer_number_set=bool(self.transfer_number),
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST") or os.getenv("SERVER", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        recording_enabled=_get_bool("RECORDING_ENABLED", False),
        transfer_number=os.getenv("TRANSFER_NUMBER", ""),
        payment_number=os.getenv("PAYMENT_NUMBER", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 200),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-asteria-en"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # Conversation
        greeting=os.getenv("GREETING", DEFAULT_GREETING),
        pause_marker=os.getenv("PAUSE_MARKER", "•"),
        min_interruption_chars=_get_int("MIN_INTERRUPTION_CHARS", 5),
        max_tool_rounds=_get_int("MAX_TOOL_ROUNDS", 5),
        tool_timeout_seconds=_get_float("TOOL_TIMEOUT_SECONDS", 10.0),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
