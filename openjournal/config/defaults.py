"""
Default value application for configuration.

This module handles:
- Backend proxy URL used by the voice client
- Journal database location
- Backend proxy bind address (API_HOST / API_PORT)
"""

import os
from typing import Any, Dict


def apply_backend_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply backend proxy URL with environment variable override.

    Environment variables:
    - OPENJOURNAL_API_URL: Base URL of the backend proxy (default: http://127.0.0.1:3001)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    backend_cfg = config_data.get('backend', {}) or {}
    env_url = os.getenv('OPENJOURNAL_API_URL', '').strip()
    if env_url:
        backend_cfg['base_url'] = env_url
    backend_cfg.setdefault('base_url', 'http://127.0.0.1:3001')
    backend_cfg['base_url'] = str(backend_cfg['base_url']).rstrip('/')
    config_data['backend'] = backend_cfg


def apply_journal_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply journal storage defaults.

    Environment variables:
    - OPENJOURNAL_JOURNAL_DB: SQLite file holding saved entries (default: data/journal.db)
    """
    journal_cfg = config_data.get('journal', {}) or {}
    env_path = os.getenv('OPENJOURNAL_JOURNAL_DB', '').strip()
    if env_path:
        journal_cfg['db_path'] = env_path
    journal_cfg.setdefault('db_path', 'data/journal.db')
    config_data['journal'] = journal_cfg


def apply_server_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply backend proxy bind address with environment variable overrides.

    Environment variables:
    - API_HOST: bind address (default: 127.0.0.1)
    - API_PORT or PORT: bind port (default: 3001)
    """
    server_cfg = config_data.get('server', {}) or {}
    env_host = os.getenv('API_HOST', '').strip()
    if env_host:
        server_cfg['host'] = env_host
    server_cfg.setdefault('host', '127.0.0.1')

    port_env = os.getenv('API_PORT') or os.getenv('PORT')
    if port_env:
        try:
            server_cfg['port'] = int(port_env)
        except ValueError:
            server_cfg.setdefault('port', 3001)
    server_cfg.setdefault('port', 3001)
    config_data['server'] = server_cfg
