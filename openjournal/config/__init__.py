"""
Configuration package for OpenJournal.

This package contains:
- loaders: YAML file loading and parsing
- security: API key injection from the environment
- defaults: Default value application
- models: Pydantic models and load_config()
"""

from openjournal.config.models import (
    DEFAULT_GREETING,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_VOICE_ID,
    AppConfig,
    AudioConfig,
    BackendConfig,
    JournalConfig,
    LoggingConfig,
    ScribeConfig,
    ServerConfig,
    SessionConfig,
    VADConfig,
    build_config,
    load_config,
    validate_config,
)

__all__ = [
    'DEFAULT_GREETING',
    'DEFAULT_SYSTEM_PROMPT',
    'DEFAULT_VOICE_ID',
    'AppConfig',
    'AudioConfig',
    'BackendConfig',
    'JournalConfig',
    'LoggingConfig',
    'ScribeConfig',
    'ServerConfig',
    'SessionConfig',
    'VADConfig',
    'build_config',
    'load_config',
    'validate_config',
]
