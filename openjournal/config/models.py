"""
Configuration models for the OpenJournal voice client and backend proxy.

Pydantic v2 models give validation and type safety; load_config() runs the
YAML → security → defaults pipeline and returns a validated AppConfig.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from openjournal.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from openjournal.config.security import inject_server_api_keys, expand_prompt_tokens
from openjournal.config.defaults import (
    apply_backend_defaults,
    apply_journal_defaults,
    apply_server_defaults,
)
from openjournal.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"  # Rachel

DEFAULT_GREETING = "Hello, I am your OpenJournal assistant. How can I help you?"

DEFAULT_SYSTEM_PROMPT = (
    "You are an empathetic and insightful conversational journaling assistant. "
    "Your goal is to provide a supportive space for the user to reflect on their thoughts, "
    "experiences, and emotions. Read the user's entries and respond naturally. Ask open-ended "
    "questions to encourage further exploration, but always let the user guide the direction and "
    "depth of the conversation. Avoid being overly prescriptive, giving unsolicited advice, or "
    "summarizing their thoughts unnecessarily. Just be a curious, active listener. Always facilitate "
    "conversation that gets the user exploring their thoughts and emotions. Try to keep responses "
    "brief and concise when possible to conserve tokens."
)


class SessionConfig(BaseModel):
    greeting: str = Field(default=DEFAULT_GREETING)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    manual_mode: bool = Field(default=False)
    voice_id: str = Field(default=DEFAULT_VOICE_ID)
    # Cooldown after assistant playback before the mic reopens (echo settle time)
    post_speech_delay_ms: int = Field(default=700, ge=0)
    # Manual strategy: how long to wait for the flushed fragment after "done speaking"
    manual_commit_timeout_ms: int = Field(default=1500, ge=0)
    commit_silence_samples: int = Field(default=1024, ge=1)
    max_channel_retries: int = Field(default=1, ge=0)


class VADConfig(BaseModel):
    silence_threshold_secs: float = Field(default=2.0)
    threshold: float = Field(default=0.55)
    min_speech_duration_ms: int = Field(default=250)


class ScribeConfig(BaseModel):
    """Realtime speech-to-text channel parameters."""
    ws_url: str = Field(default="wss://api.elevenlabs.io/v1/speech-to-text/realtime")
    model_id: str = Field(default="scribe_v2_realtime")
    language_code: str = Field(default="en")
    audio_format: str = Field(default="pcm_16000")
    sample_rate_hz: int = Field(default=16000)
    connect_timeout_sec: float = Field(default=10.0)
    vad: VADConfig = Field(default_factory=VADConfig)


class BackendConfig(BaseModel):
    """Where the voice client reaches the backend proxy."""
    base_url: str = Field(default="http://127.0.0.1:3001")
    request_timeout_sec: float = Field(default=60.0)


class AudioConfig(BaseModel):
    block_size: int = Field(default=4096)
    input_device: Optional[Union[int, str]] = None
    output_device: Optional[Union[int, str]] = None
    # Fallback playback path: external player invoked with the audio file path appended
    fallback_player: List[str] = Field(
        default_factory=lambda: ["ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet"]
    )


class JournalConfig(BaseModel):
    db_path: str = Field(default="data/journal.db")


class ServerConfig(BaseModel):
    """Backend proxy settings. API keys are injected from the environment only."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3001)
    openrouter_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None
    openrouter_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions")
    interviewer_model: str = Field(default="google/gemini-3.1-pro-preview")
    interviewer_max_tokens: int = Field(default=4096)
    narrator_model: str = Field(default="google/gemini-3.1-pro-preview")
    elevenlabs_base_url: str = Field(default="https://api.elevenlabs.io/v1")
    tts_model: str = Field(default="eleven_multilingual_v2")
    tts_output_format: str = Field(default="mp3_44100_128")
    stt_model: str = Field(default="scribe_v2")
    default_voice_id: str = Field(default=DEFAULT_VOICE_ID)
    request_timeout_sec: float = Field(default=60.0)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")  # debug|info|warning|error|critical
    format: str = Field(default="console")  # console|json
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    session: SessionConfig = Field(default_factory=SessionConfig)
    scribe: ScribeConfig = Field(default_factory=ScribeConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def build_config(config_data: Optional[Dict[str, Any]] = None) -> AppConfig:
    """Run the security/defaults phases over a raw dict and validate it."""
    config_data = dict(config_data or {})

    # Phase 1: Security - credentials from environment variables only
    inject_server_api_keys(config_data)
    expand_prompt_tokens(config_data)

    # Phase 2: Apply default values
    apply_backend_defaults(config_data)
    apply_journal_defaults(config_data)
    apply_server_defaults(config_data)

    # Phase 3: Validate and return
    return AppConfig(**config_data)


def load_config(path: str = "config/openjournal.yaml") -> AppConfig:
    """
    Load and validate configuration from YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
    """
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)
    config = build_config(config_data)
    logger.debug(
        "Configuration loaded",
        path=path,
        manual_mode=config.session.manual_mode,
        backend_url=config.backend.base_url,
    )
    return config


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before starting a session or the backend.

    Returns:
        (errors, warnings): errors block startup, warnings are logged only.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not config.backend.base_url.startswith(("http://", "https://")):
        errors.append(f"Invalid backend base_url: {config.backend.base_url} (must be http:// or https://)")

    if not config.scribe.ws_url.startswith(("ws://", "wss://")):
        errors.append(f"Invalid scribe ws_url: {config.scribe.ws_url} (must be ws:// or wss://)")

    if not config.session.system_prompt.strip():
        errors.append("session.system_prompt must not be empty")

    if config.server.port < 1 or config.server.port > 65535:
        errors.append(f"Server port {config.server.port} out of valid range (1-65535)")

    if config.session.manual_commit_timeout_ms < 300:
        warnings.append(
            f"Manual commit timeout very small: {config.session.manual_commit_timeout_ms}ms "
            "(trailing speech may be cut off)"
        )
    if config.session.post_speech_delay_ms < 200:
        warnings.append(
            f"Post-speech delay very small: {config.session.post_speech_delay_ms}ms "
            "(assistant echo may be transcribed)"
        )
    if config.server.host == "0.0.0.0":
        warnings.append("Backend bound to 0.0.0.0; upstream credentials are reachable from the network")

    return errors, warnings
