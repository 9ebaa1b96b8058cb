"""
Configuration management for CIcaDA
"""

from .settings import (
    CicadaConfig,
    CONFIG_ENV_VAR,
    GITHUB_TOKEN_ENV_VAR,
    default_config_path,
    load_config,
    save_config,
    init_config_dirs,
)

__all__ = [
    'CicadaConfig',
    'CONFIG_ENV_VAR',
    'GITHUB_TOKEN_ENV_VAR',
    'default_config_path',
    'load_config',
    'save_config',
    'init_config_dirs',
]
