"""
Security-critical configuration injection.

This module handles:
- Upstream API key injection (ONLY from environment variables)
- Environment variable token expansion

SECURITY POLICY:
- API keys MUST NEVER be in YAML files
- The OpenRouter and ElevenLabs keys live only on the backend proxy side;
  the voice client never sees them (it uses single-use realtime tokens)
"""

import os
from typing import Any, Dict, Optional


OPENROUTER_KEY_ENV = "OPENROUTER_API_KEY"
ELEVENLABS_KEY_ENV = "ELEVENLABS_API_KEY"


def _is_nonempty_string(val: Any) -> bool:
    """
    Check if value is a non-empty string.

    Args:
        val: Value to check

    Returns:
        True if val is a string with non-whitespace content
    """
    return isinstance(val, str) and val.strip() != ""


def expand_string_tokens(value: str) -> str:
    """
    Expand environment variable tokens in a string.

    Supports ${VAR} and $VAR syntax. If variable is undefined,
    it is left unchanged.
    """
    return os.path.expandvars(value or "")


def read_api_key(env_name: str) -> Optional[str]:
    """Return the stripped key from the environment, or None when unset/blank."""
    value = os.getenv(env_name)
    if _is_nonempty_string(value):
        return value.strip()
    return None


def inject_server_api_keys(config_data: Dict[str, Any]) -> None:
    """
    Inject upstream API keys from environment variables ONLY.

    Any key present in YAML is discarded so credentials cannot leak through
    version-controlled config files.

    Environment variables:
    - OPENROUTER_API_KEY: text generation (interviewer, reformat)
    - ELEVENLABS_API_KEY: speech synthesis, transcription, voices, realtime tokens

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    server_cfg = config_data.get('server') or {}
    if not isinstance(server_cfg, dict):
        server_cfg = {}

    server_cfg['openrouter_api_key'] = read_api_key(OPENROUTER_KEY_ENV)
    server_cfg['elevenlabs_api_key'] = read_api_key(ELEVENLABS_KEY_ENV)

    config_data['server'] = server_cfg


def expand_prompt_tokens(config_data: Dict[str, Any]) -> None:
    """
    Expand ${VAR} tokens inside session greeting and system prompt strings.

    YAML-level expansion already covers most cases; this handles values set
    programmatically before load_config() validates them.
    """
    session_cfg = config_data.get('session')
    if not isinstance(session_cfg, dict):
        return
    for key in ('greeting', 'system_prompt'):
        if _is_nonempty_string(session_cfg.get(key)):
            session_cfg[key] = expand_string_tokens(session_cfg[key])
