"""
Unit tests for the key record model
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from cicada.crypto.types import (
    BackupManifest,
    KeyAlgorithm,
    KeyMetadata,
    KeyPair,
    KeyPurpose,
    POST_QUANTUM_ALGORITHMS,
    RotationMapping,
    StoredKeyRecord,
    format_timestamp,
    normalize_key_id,
    parse_timestamp,
)
from cicada.exceptions import KeyValidationError


class TestKeyAlgorithm:
    """Test cases for the algorithm enumeration and its lookup table"""

    @pytest.mark.parametrize("text,expected", [
        ("ED25519", KeyAlgorithm.ED25519),
        ("ed25519", KeyAlgorithm.ED25519),
        ("ecdsa256", KeyAlgorithm.ECDSA_P256),
        ("ecdsa384", KeyAlgorithm.ECDSA_P384),
        ("rsa4096", KeyAlgorithm.RSA4096),
        ("RSA-2048", KeyAlgorithm.RSA2048),
        ("Dilithium3 (NIST Level 3)", KeyAlgorithm.DILITHIUM3),
        ("kyber", KeyAlgorithm.KYBER768),
    ])
    def test_parse(self, text, expected):
        """Test parsing names, values, aliases and display names"""
        assert KeyAlgorithm.parse(text) is expected

    def test_parse_member_passthrough(self):
        assert KeyAlgorithm.parse(KeyAlgorithm.RSA2048) is KeyAlgorithm.RSA2048

    @pytest.mark.parametrize("text", ["", "des", None, 42])
    def test_parse_unknown(self, text):
        with pytest.raises(KeyValidationError) as exc_info:
            KeyAlgorithm.parse(text)
        assert exc_info.value.error_code == "UNKNOWN_ALGORITHM"

    def test_table_values(self):
        """Test that each member exposes its lookup row"""
        assert KeyAlgorithm.ED25519.display_name == "Ed25519"
        assert KeyAlgorithm.ED25519.ssh_type == "ssh-ed25519"
        assert KeyAlgorithm.RSA4096.key_size == 4096
        assert KeyAlgorithm.ECDSA_P384.ssh_type == "ecdsa-sha2-nistp384"
        assert KeyAlgorithm.DILITHIUM3.ssh_type == "ssh-dilithium3"

    def test_quantum_resistance(self):
        assert POST_QUANTUM_ALGORITHMS == {
            KeyAlgorithm.DILITHIUM2, KeyAlgorithm.DILITHIUM3, KeyAlgorithm.DILITHIUM5,
            KeyAlgorithm.KYBER512, KeyAlgorithm.KYBER768, KeyAlgorithm.KYBER1024,
        }
        assert not KeyAlgorithm.ED25519.quantum_resistant
        assert not KeyAlgorithm.RSA4096.quantum_resistant


class TestKeyPurpose:
    """Test cases for key purposes"""

    def test_parse(self):
        assert KeyPurpose.parse("SSH_AUTH") is KeyPurpose.SSH_AUTH
        assert KeyPurpose.parse("hybrid_qr") is KeyPurpose.HYBRID_QR

    def test_parse_unknown(self):
        with pytest.raises(KeyValidationError):
            KeyPurpose.parse("mining")


class TestTimestamps:
    """Test cases for timestamp helpers"""

    def test_parse_zulu_suffix(self):
        parsed = parse_timestamp("2025-01-02T03:04:05Z")
        assert parsed == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_parse_naive_is_utc(self):
        assert parse_timestamp("2025-01-02T03:04:05").tzinfo == timezone.utc

    def test_format_roundtrip(self):
        value = datetime(2025, 6, 1, 12, 30, tzinfo=timezone.utc)
        assert parse_timestamp(format_timestamp(value)) == value

    def test_normalize_key_id(self):
        key_id = uuid.uuid4()
        assert normalize_key_id(key_id) is key_id
        assert normalize_key_id(str(key_id)) == key_id

    def test_normalize_invalid_key_id(self):
        with pytest.raises(KeyValidationError) as exc_info:
            normalize_key_id("not-a-uuid")
        assert exc_info.value.error_code == "INVALID_KEY_ID"


class TestKeyMetadata:
    """Test cases for KeyMetadata"""

    def test_defaults(self):
        """Test that id and creation time are generated"""
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519, email="test@example.com")

        assert isinstance(metadata.id, uuid.UUID)
        assert metadata.created_at.tzinfo is not None
        assert metadata.purpose is KeyPurpose.SSH_AUTH
        assert metadata.fingerprint == ""
        assert metadata.expires_at is None
        assert metadata.superseded_by is None

    def test_ids_are_unique(self):
        first = KeyMetadata(algorithm=KeyAlgorithm.ED25519)
        second = KeyMetadata(algorithm=KeyAlgorithm.ED25519)
        assert first.id != second.id

    def test_quantum_resistant_follows_algorithm(self):
        assert KeyMetadata(algorithm=KeyAlgorithm.DILITHIUM3).quantum_resistant is True
        assert KeyMetadata(algorithm=KeyAlgorithm.ED25519).quantum_resistant is False

    def test_quantum_resistant_is_read_only(self):
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519)
        with pytest.raises(AttributeError):
            metadata.quantum_resistant = True

    def test_naive_expiry_made_aware(self):
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519, expires_at=datetime(2030, 1, 1))
        assert metadata.expires_at.tzinfo == timezone.utc

    def test_dict_roundtrip(self):
        """Test serialization keeps id, email, times and supersession"""
        new_id = uuid.uuid4()
        metadata = KeyMetadata(
            algorithm=KeyAlgorithm.ECDSA_P256,
            purpose=KeyPurpose.CODE_SIGNING,
            email="dev@example.com",
            comment="laptop",
            expires_at=datetime.now(timezone.utc) + timedelta(days=10),
            fingerprint="SHA256:abc",
            superseded_by=new_id,
        )

        data = metadata.to_dict()
        assert data['algorithm'] == "ECDSA_P256"
        assert data['purpose'] == "CODE_SIGNING"
        assert data['quantum_resistant'] is False
        assert data['superseded_by'] == str(new_id)

        restored = KeyMetadata.from_dict(data)
        assert restored == metadata

    def test_from_dict_ignores_stored_quantum_flag(self):
        data = KeyMetadata(algorithm=KeyAlgorithm.ED25519).to_dict()
        data['quantum_resistant'] = True

        assert KeyMetadata.from_dict(data).quantum_resistant is False

    def test_from_dict_missing_required_field(self):
        data = KeyMetadata(algorithm=KeyAlgorithm.ED25519).to_dict()
        del data['id']
        with pytest.raises(KeyError):
            KeyMetadata.from_dict(data)


class TestKeyPair:
    """Test cases for KeyPair and StoredKeyRecord"""

    def test_rejects_non_bytes(self):
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519)
        with pytest.raises(KeyValidationError):
            KeyPair(metadata=metadata, public_key="ssh-ed25519 AAAA", private_key=b"x")
        with pytest.raises(KeyValidationError):
            KeyPair(metadata=metadata, public_key=b"ssh-ed25519 AAAA", private_key=None)

    def test_id(self):
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519)
        key_pair = KeyPair(metadata=metadata, public_key=b"pub", private_key=b"priv")
        assert key_pair.id == metadata.id
        assert key_pair.passphrase_protected is False

    def test_stored_record_delegates_metadata(self):
        metadata = KeyMetadata(algorithm=KeyAlgorithm.ED25519, email="a@example.com")
        record = StoredKeyRecord(metadata, "/keys/id_x", "/keys/id_x.pub", "/keys/id_x.json")

        assert record.email == "a@example.com"
        assert record.algorithm is KeyAlgorithm.ED25519
        assert record.name == "id_x"
        assert record.to_dict()['public_key_path'] == "/keys/id_x.pub"
        with pytest.raises(AttributeError):
            record.no_such_field


class TestBackupManifest:
    """Test cases for BackupManifest"""

    def test_from_dict(self):
        data = {
            'backup_date': "2025-01-01T00:00:00.000000Z",
            'key_id': str(uuid.uuid4()),
            'algorithm': "ED25519",
            'email': "a@example.com",
            'encrypted': False,
        }
        manifest = BackupManifest.from_dict(data, path="/backups/b1")

        assert manifest.path == "/backups/b1"
        assert manifest.to_dict() == data

    def test_rotation_mapping_unpacks(self):
        old_id, new_id = RotationMapping(uuid.uuid4(), uuid.uuid4())
        assert old_id != new_id
