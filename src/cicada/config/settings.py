"""
Configuration management for CIcaDA

Settings are stored as JSON grouped in sections:

    {
      "storage":  {"key_dir": ..., "backup_dir": ..., "backup_keep": 5},
      "security": {"key_provider": "cryptography", "default_algorithm": "ed25519"},
      "rotation": {"warning_days": 30, "new_expiry_days": 365},
      "github":   {"token": ..., "username": ...},
      "logging":  {"verbosity": 2}
    }

Missing sections and keys fall back to the defaults below.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..crypto.storage import ensure_directory
from ..crypto.types import KeyAlgorithm
from ..exceptions import ConfigurationError, KeyValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CICADA_CONFIG"
GITHUB_TOKEN_ENV_VAR = "CICADA_GITHUB_TOKEN"
DEFAULT_HOME = os.path.join("~", ".cicada")
CONFIG_FILE_PERMISSIONS = 0o600
KEY_PROVIDERS = ("cryptography", "ssh-keygen")

# field name -> (section, key)
_LAYOUT = {
    'key_dir': ('storage', 'key_dir'),
    'backup_dir': ('storage', 'backup_dir'),
    'backup_keep': ('storage', 'backup_keep'),
    'key_provider': ('security', 'key_provider'),
    'default_algorithm': ('security', 'default_algorithm'),
    'warning_days': ('rotation', 'warning_days'),
    'new_expiry_days': ('rotation', 'new_expiry_days'),
    'github_token': ('github', 'token'),
    'github_username': ('github', 'username'),
    'verbosity': ('logging', 'verbosity'),
}


def _default_dir(name: str) -> str:
    return os.path.expanduser(os.path.join(DEFAULT_HOME, name))


def default_config_path() -> Path:
    """``$CICADA_CONFIG`` or ``~/.cicada/config.json``"""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(_default_dir("config.json"))


@dataclass
class CicadaConfig:
    """
    Application settings

    Attributes:
        key_dir: Key directory
        backup_dir: Backup directory
        key_provider: ``cryptography`` (in-process) or ``ssh-keygen``
        default_algorithm: Algorithm used by ``generate`` when none is given
        warning_days: Expiry warning window in days
        new_expiry_days: Lifetime in days of keys created by rotation
        backup_keep: Backups kept per key by cleanup
        verbosity: 0 errors, 1 warnings, 2 info, 3 debug
        github_token: GitHub token for the registry commands
        github_username: GitHub account name, informational
    """
    key_dir: str = _default_dir("keys")
    backup_dir: str = _default_dir("backups")
    key_provider: str = "cryptography"
    default_algorithm: str = "ed25519"
    warning_days: int = 30
    new_expiry_days: int = 365
    backup_keep: int = 5
    verbosity: int = 2
    github_token: Optional[str] = None
    github_username: Optional[str] = None

    def __post_init__(self):
        self.key_dir = os.path.expanduser(str(self.key_dir))
        self.backup_dir = os.path.expanduser(str(self.backup_dir))
        self.validate()

    def validate(self) -> None:
        """
        Check every setting

        Raises:
            ConfigurationError: On the first invalid value
        """
        for name in ('warning_days', 'new_expiry_days', 'backup_keep', 'verbosity'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}", "INVALID_VALUE")

        if self.warning_days < 0:
            raise ConfigurationError("warning_days must not be negative", "INVALID_VALUE")
        if self.new_expiry_days <= 0:
            raise ConfigurationError("new_expiry_days must be positive", "INVALID_VALUE")
        if self.backup_keep < 0:
            raise ConfigurationError("backup_keep must not be negative", "INVALID_VALUE")
        if not 0 <= self.verbosity <= 3:
            raise ConfigurationError("verbosity must be between 0 and 3", "INVALID_VALUE")
        if not self.key_dir or not self.backup_dir:
            raise ConfigurationError("key_dir and backup_dir must not be empty", "INVALID_PATH")
        if self.key_provider not in KEY_PROVIDERS:
            raise ConfigurationError(
                f"key_provider must be one of {', '.join(KEY_PROVIDERS)}, got {self.key_provider!r}",
                "INVALID_PROVIDER"
            )
        try:
            KeyAlgorithm.parse(self.default_algorithm)
        except KeyValidationError as e:
            raise ConfigurationError(str(e), "INVALID_ALGORITHM") from e

    @property
    def algorithm(self) -> KeyAlgorithm:
        return KeyAlgorithm.parse(self.default_algorithm)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Sectioned dictionary; unset GitHub values are left out"""
        data: Dict[str, Dict[str, Any]] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            section, key = _LAYOUT[f.name]
            if section == 'github' and value is None:
                continue
            data.setdefault(section, {})[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CicadaConfig':
        """
        Build from a sectioned dictionary

        Raises:
            ConfigurationError: If a section is not an object or a value is invalid
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a JSON object", "INVALID_FORMAT")

        kwargs = {}
        for name, (section, key) in _LAYOUT.items():
            section_data = data.get(section)
            if section_data is None:
                continue
            if not isinstance(section_data, dict):
                raise ConfigurationError(f"Section '{section}' must be an object", "INVALID_FORMAT")
            if key in section_data:
                kwargs[name] = section_data[key]
        return cls(**kwargs)


def load_config(path: Optional[Union[str, Path]] = None) -> CicadaConfig:
    """
    Load configuration; defaults when the file does not exist

    ``CICADA_GITHUB_TOKEN`` overrides the stored GitHub token.

    Raises:
        ConfigurationError: On unreadable or malformed content
    """
    path = Path(path).expanduser() if path else default_config_path()

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        config = CicadaConfig()
    else:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse config file {path}: {e}", "PARSE_ERROR") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file {path}: {e}", "FILE_ERROR") from e
        config = CicadaConfig.from_dict(data)

    token = os.environ.get(GITHUB_TOKEN_ENV_VAR)
    if token:
        config.github_token = token
    return config


def save_config(config: CicadaConfig, path: Optional[Union[str, Path]] = None) -> Path:
    """
    Write configuration as JSON with mode 0600

    Raises:
        ConfigurationError: If the file cannot be written
    """
    path = Path(path).expanduser() if path else default_config_path()
    config.validate()
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(config.to_dict(), f, indent=2)
        os.chmod(path, CONFIG_FILE_PERMISSIONS)
    except OSError as e:
        raise ConfigurationError(f"Failed to write config file {path}: {e}", "FILE_ERROR") from e

    logger.info(f"Configuration saved to {path}")
    return path


def init_config_dirs(config: CicadaConfig) -> None:
    """Create the key and backup directories with mode 0700"""
    ensure_directory(config.key_dir)
    ensure_directory(config.backup_dir)
    logger.info(f"Initialized directories {config.key_dir} and {config.backup_dir}")
