"""
Shared fixtures for the CIcaDA test suite
"""

import pytest

from cicada.crypto.backup import BackupManager
from cicada.crypto.keygen import generate_key_pair
from cicada.crypto.provider import CryptographyKeyProvider
from cicada.crypto.rotation import RotationEngine
from cicada.crypto.storage import KeyStore
from cicada.crypto.types import KeyAlgorithm
from cicada.logging_utils import MemoryAuditSink


@pytest.fixture
def provider():
    return CryptographyKeyProvider()


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def key_dir(tmp_path):
    return tmp_path / "keys"


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def store(provider, audit_sink):
    return KeyStore(provider, audit_sink)


@pytest.fixture
def backups(store, audit_sink):
    return BackupManager(store, audit_sink)


@pytest.fixture
def rotation(store, backups, provider, audit_sink):
    return RotationEngine(store, backups, provider, audit_sink)


@pytest.fixture
def make_key(provider):
    """Factory for in-memory key pairs (Ed25519 unless told otherwise)"""
    def _make(email="test@example.com", algorithm=KeyAlgorithm.ED25519, **kwargs):
        return generate_key_pair(algorithm, email, provider=provider, **kwargs)
    return _make


@pytest.fixture
def saved_key(store, key_dir, make_key):
    """Factory that generates and stores a key, returning the key pair"""
    def _save(email="test@example.com", algorithm=KeyAlgorithm.ED25519, name=None, **kwargs):
        key_pair = make_key(email, algorithm, **kwargs)
        store.save(key_pair, key_dir, name)
        return key_pair
    return _save
