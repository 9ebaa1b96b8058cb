"""
CIcaDA key management
Lifecycle management for SSH-style key pairs: storage, backup, rotation and audit
"""

from .version import __version__
from .crypto import (
    KeyAlgorithm,
    KeyPurpose,
    KeyMetadata,
    KeyPair,
    StoredKeyRecord,
    BackupManifest,
    RotationMapping,
    KeyMaterialProvider,
    CryptographyKeyProvider,
    OpenSSHKeygenProvider,
    get_key_provider,
    generate_key_pair,
    generate_hybrid_key_pairs,
    KeyStore,
    BackupManager,
    RotationEngine,
    KeyState,
)
from .validation import Validator
from .config import CicadaConfig, load_config, save_config
from .logging_utils import (
    configure_logging,
    LoggingAuditSink,
    MemoryAuditSink,
    NullAuditSink,
)
from .exceptions import (
    CicadaError,
    ConfigurationError,
    KeyGenerationError,
    KeyValidationError,
    StorageError,
    IntegrationError,
)

__all__ = [
    '__version__',
    'KeyAlgorithm',
    'KeyPurpose',
    'KeyMetadata',
    'KeyPair',
    'StoredKeyRecord',
    'BackupManifest',
    'RotationMapping',
    'KeyMaterialProvider',
    'CryptographyKeyProvider',
    'OpenSSHKeygenProvider',
    'get_key_provider',
    'generate_key_pair',
    'generate_hybrid_key_pairs',
    'KeyStore',
    'BackupManager',
    'RotationEngine',
    'KeyState',
    'Validator',
    'CicadaConfig',
    'load_config',
    'save_config',
    'configure_logging',
    'LoggingAuditSink',
    'MemoryAuditSink',
    'NullAuditSink',
    'CicadaError',
    'ConfigurationError',
    'KeyGenerationError',
    'KeyValidationError',
    'StorageError',
    'IntegrationError',
]
