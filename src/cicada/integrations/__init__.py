"""
Remote credential registry integrations
"""

from .github import GitHubKeyRegistry, RegistryConfig

__all__ = [
    'GitHubKeyRegistry',
    'RegistryConfig',
]
