"""
Key material, storage, backup and rotation for CIcaDA
"""

from .types import (
    KeyAlgorithm,
    KeyPurpose,
    KeyMetadata,
    KeyPair,
    StoredKeyRecord,
    BackupManifest,
    RotationMapping,
    POST_QUANTUM_ALGORITHMS,
)

from .provider import (
    KeyMaterialProvider,
    CryptographyKeyProvider,
    get_key_provider,
    get_default_provider,
)

from .openssh import OpenSSHKeygenProvider

from .keygen import (
    generate_key_pair,
    generate_hybrid_key_pairs,
)

from .storage import KeyStore

from .backup import BackupManager

from .rotation import (
    RotationEngine,
    KeyState,
    key_state,
)

__all__ = [
    # Types
    'KeyAlgorithm',
    'KeyPurpose',
    'KeyMetadata',
    'KeyPair',
    'StoredKeyRecord',
    'BackupManifest',
    'RotationMapping',
    'POST_QUANTUM_ALGORITHMS',

    # Providers
    'KeyMaterialProvider',
    'CryptographyKeyProvider',
    'OpenSSHKeygenProvider',
    'get_key_provider',
    'get_default_provider',

    # Generation
    'generate_key_pair',
    'generate_hybrid_key_pairs',

    # Lifecycle
    'KeyStore',
    'BackupManager',
    'RotationEngine',
    'KeyState',
    'key_state',
]
