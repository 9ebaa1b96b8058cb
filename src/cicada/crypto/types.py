"""
Key record model for CIcaDA

Defines the algorithm and purpose enumerations, the in-memory key pair, and
the serialized projections used by the key store and the backup manager.
"""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional, Union

from ..exceptions import KeyValidationError

KeyId = Union[str, uuid.UUID]


class _AlgorithmInfo(NamedTuple):
    display_name: str
    key_size: int
    quantum_resistant: bool
    ssh_type: str


_ALGORITHM_TABLE: Dict[str, _AlgorithmInfo] = {
    'ed25519': _AlgorithmInfo('Ed25519', 256, False, 'ssh-ed25519'),
    'rsa2048': _AlgorithmInfo('RSA-2048', 2048, False, 'ssh-rsa'),
    'rsa4096': _AlgorithmInfo('RSA-4096', 4096, False, 'ssh-rsa'),
    'ecdsa_p256': _AlgorithmInfo('ECDSA-P256', 256, False, 'ecdsa-sha2-nistp256'),
    'ecdsa_p384': _AlgorithmInfo('ECDSA-P384', 384, False, 'ecdsa-sha2-nistp384'),
    'dilithium2': _AlgorithmInfo('Dilithium2 (NIST Level 2)', 2528, True, 'ssh-dilithium2'),
    'dilithium3': _AlgorithmInfo('Dilithium3 (NIST Level 3)', 4000, True, 'ssh-dilithium3'),
    'dilithium5': _AlgorithmInfo('Dilithium5 (NIST Level 5)', 4880, True, 'ssh-dilithium5'),
    'kyber512': _AlgorithmInfo('Kyber512 (NIST Level 1)', 128, True, 'ssh-kyber512'),
    'kyber768': _AlgorithmInfo('Kyber768 (NIST Level 3)', 192, True, 'ssh-kyber768'),
    'kyber1024': _AlgorithmInfo('Kyber1024 (NIST Level 5)', 256, True, 'ssh-kyber1024'),
}

_ALGORITHM_ALIASES = {
    'ecdsa256': 'ecdsa_p256',
    'ecdsa-p256': 'ecdsa_p256',
    'ecdsa384': 'ecdsa_p384',
    'ecdsa-p384': 'ecdsa_p384',
    'rsa-2048': 'rsa2048',
    'rsa-4096': 'rsa4096',
    'rsa': 'rsa4096',
    'ecdsa': 'ecdsa_p256',
    'dilithium': 'dilithium3',
    'kyber': 'kyber768',
}


class KeyAlgorithm(Enum):
    """Supported key algorithms"""
    ED25519 = 'ed25519'
    RSA2048 = 'rsa2048'
    RSA4096 = 'rsa4096'
    ECDSA_P256 = 'ecdsa_p256'
    ECDSA_P384 = 'ecdsa_p384'
    # Post-quantum placeholders
    DILITHIUM2 = 'dilithium2'
    DILITHIUM3 = 'dilithium3'
    DILITHIUM5 = 'dilithium5'
    KYBER512 = 'kyber512'
    KYBER768 = 'kyber768'
    KYBER1024 = 'kyber1024'

    @property
    def info(self) -> _AlgorithmInfo:
        return _ALGORITHM_TABLE[self.value]

    @property
    def display_name(self) -> str:
        return self.info.display_name

    @property
    def key_size(self) -> int:
        """Key size in bits (security level for the post-quantum entries)"""
        return self.info.key_size

    @property
    def quantum_resistant(self) -> bool:
        return self.info.quantum_resistant

    @property
    def ssh_type(self) -> str:
        return self.info.ssh_type

    @classmethod
    def parse(cls, text: Union[str, 'KeyAlgorithm']) -> 'KeyAlgorithm':
        """
        Parse an algorithm from its member name, value, alias or display name

        Raises:
            KeyValidationError: If the text names no known algorithm
        """
        if isinstance(text, KeyAlgorithm):
            return text
        if not isinstance(text, str) or not text.strip():
            raise KeyValidationError(f"Unknown key algorithm: {text!r}", "UNKNOWN_ALGORITHM")

        candidate = text.strip().lower()
        candidate = _ALGORITHM_ALIASES.get(candidate, candidate)
        for member in cls:
            if candidate in (member.value, member.name.lower(), member.display_name.lower()):
                return member

        raise KeyValidationError(f"Unknown key algorithm: {text!r}", "UNKNOWN_ALGORITHM")


POST_QUANTUM_ALGORITHMS = frozenset(a for a in KeyAlgorithm if a.quantum_resistant)


class KeyPurpose(Enum):
    """Key purpose/usage"""
    SSH_AUTH = 'ssh_auth'
    CODE_SIGNING = 'code_signing'
    ENCRYPTION = 'encryption'
    HYBRID_QR = 'hybrid_qr'

    @classmethod
    def parse(cls, text: Union[str, 'KeyPurpose']) -> 'KeyPurpose':
        if isinstance(text, KeyPurpose):
            return text
        candidate = str(text).strip().lower()
        for member in cls:
            if candidate in (member.value, member.name.lower()):
                return member
        raise KeyValidationError(f"Unknown key purpose: {text!r}", "UNKNOWN_PURPOSE")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as an ISO-8601 string in UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp; naive values are taken as UTC

    Raises:
        ValueError: If the string is not ISO-8601
    """
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_key_id(key_id: KeyId) -> uuid.UUID:
    """
    Coerce a key id given as text or UUID

    Raises:
        KeyValidationError: If the value is not a UUID
    """
    if isinstance(key_id, uuid.UUID):
        return key_id
    try:
        return uuid.UUID(str(key_id))
    except (ValueError, AttributeError, TypeError) as e:
        raise KeyValidationError(f"Invalid key id: {key_id!r}", "INVALID_KEY_ID") from e


@dataclass
class KeyMetadata:
    """
    Identity record for one key pair

    ``quantum_resistant`` is derived from ``algorithm`` and cannot be set.

    Attributes:
        algorithm: Key algorithm
        purpose: Key purpose
        email: Owner email address
        comment: Free-text comment
        expires_at: Expiry time, None for keys that never expire
        id: Unique identifier generated at construction
        created_at: Creation time (UTC)
        fingerprint: Digest of the public key, empty until computed
        superseded_by: Id of the key that replaced this one by rotation
    """
    algorithm: KeyAlgorithm
    purpose: KeyPurpose = KeyPurpose.SSH_AUTH
    email: str = ''
    comment: str = ''
    expires_at: Optional[datetime] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: datetime = field(default_factory=utc_now)
    fingerprint: str = ''
    superseded_by: Optional[uuid.UUID] = None

    def __post_init__(self):
        self.algorithm = KeyAlgorithm.parse(self.algorithm)
        self.purpose = KeyPurpose.parse(self.purpose)
        self.id = normalize_key_id(self.id)
        if self.superseded_by is not None:
            self.superseded_by = normalize_key_id(self.superseded_by)
        if self.created_at.tzinfo is None:
            self.created_at = self.created_at.replace(tzinfo=timezone.utc)
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            self.expires_at = self.expires_at.replace(tzinfo=timezone.utc)

    @property
    def quantum_resistant(self) -> bool:
        return self.algorithm.quantum_resistant

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'id': str(self.id),
            'algorithm': self.algorithm.name,
            'purpose': self.purpose.name,
            'created_at': format_timestamp(self.created_at),
            'expires_at': format_timestamp(self.expires_at) if self.expires_at else None,
            'email': self.email,
            'comment': self.comment,
            'fingerprint': self.fingerprint,
            'quantum_resistant': self.quantum_resistant,
            'superseded_by': str(self.superseded_by) if self.superseded_by else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KeyMetadata':
        """Create from dictionary; a stored ``quantum_resistant`` value is ignored"""
        expires_at = data.get('expires_at')
        return cls(
            algorithm=KeyAlgorithm.parse(data['algorithm']),
            purpose=KeyPurpose.parse(data.get('purpose', KeyPurpose.SSH_AUTH.name)),
            email=data.get('email', ''),
            comment=data.get('comment') or '',
            expires_at=parse_timestamp(expires_at) if expires_at else None,
            id=normalize_key_id(data['id']),
            created_at=parse_timestamp(data['created_at']),
            fingerprint=data.get('fingerprint') or '',
            superseded_by=data.get('superseded_by') or None,
        )


@dataclass
class KeyPair:
    """
    Public/private key material plus metadata, held in memory

    Attributes:
        metadata: Identity record
        public_key: Public key bytes (OpenSSH line)
        private_key: Private key bytes
        passphrase_protected: Whether the private key is encrypted
    """
    metadata: KeyMetadata
    public_key: bytes
    private_key: bytes
    passphrase_protected: bool = False

    def __post_init__(self):
        if not isinstance(self.public_key, bytes):
            raise KeyValidationError("Public key must be bytes", "INVALID_PUBLIC_KEY_TYPE")
        if not isinstance(self.private_key, bytes):
            raise KeyValidationError("Private key must be bytes", "INVALID_PRIVATE_KEY_TYPE")

    @property
    def id(self) -> uuid.UUID:
        return self.metadata.id


@dataclass
class StoredKeyRecord:
    """On-disk projection of a key pair: private key, ``.pub`` and ``.json``"""
    metadata: KeyMetadata
    private_key_path: str
    public_key_path: str
    metadata_path: str

    @property
    def id(self) -> uuid.UUID:
        return self.metadata.id

    @property
    def name(self) -> str:
        """Base name shared by the three artifacts"""
        return os.path.basename(self.private_key_path)

    def __getattr__(self, item):
        # Expose metadata fields (email, algorithm, expires_at, ...) directly
        if item == 'metadata':
            raise AttributeError(item)
        return getattr(self.metadata, item)

    def to_dict(self) -> Dict[str, Any]:
        data = self.metadata.to_dict()
        data['public_key_path'] = self.public_key_path
        data['private_key_path'] = self.private_key_path
        return data


@dataclass
class BackupManifest:
    """
    Per-backup record written as ``manifest.json``

    Attributes:
        backup_date: Fixed-width UTC timestamp of the backup
        key_id: Id of the backed up key
        algorithm: Algorithm name of the backed up key
        email: Email of the backed up key
        encrypted: Whether the private key copy is sealed with a passphrase
        path: Backup directory (set when listing, not serialized)
    """
    backup_date: str
    key_id: str
    algorithm: str
    email: str
    encrypted: bool = False
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'backup_date': self.backup_date,
            'key_id': self.key_id,
            'algorithm': self.algorithm,
            'email': self.email,
            'encrypted': self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], path: Optional[str] = None) -> 'BackupManifest':
        return cls(
            backup_date=data['backup_date'],
            key_id=str(data['key_id']),
            algorithm=data.get('algorithm', ''),
            email=data.get('email', 'unknown'),
            encrypted=bool(data.get('encrypted', False)),
            path=path,
        )


class RotationMapping(NamedTuple):
    """Result of one rotation"""
    old_id: uuid.UUID
    new_id: uuid.UUID
