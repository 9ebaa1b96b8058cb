"""
Tests for key backup and restore
"""

import json
import os
import re
import uuid

import pytest

from cicada.crypto.backup import (
    MANIFEST_NAME,
    open_private_key,
    seal_private_key,
    validate_passphrase,
)
from cicada.crypto.types import KeyAlgorithm
from cicada.exceptions import StorageError

PASSPHRASE = "correct horse battery"


class TestBackupOne:
    """Test cases for single key backups"""

    def test_backup_layout(self, backups, key_dir, backup_dir, saved_key):
        """Test directory name, copied files and manifest contents"""
        key_pair = saved_key(email="backup@example.com")
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)

        name = os.path.basename(path)
        assert re.fullmatch(rf"backup_{key_pair.id}_\d{{8}}_\d{{6}}", name)
        assert sorted(os.listdir(path)) == sorted(os.listdir(key_dir) + [MANIFEST_NAME])

        with open(os.path.join(path, MANIFEST_NAME)) as f:
            manifest = json.load(f)
        assert manifest['key_id'] == str(key_pair.id)
        assert manifest['algorithm'] == "ED25519"
        assert manifest['email'] == "backup@example.com"
        assert manifest['encrypted'] is False
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}Z", manifest['backup_date'])

    def test_same_second_backups_do_not_collide(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        first = backups.backup_one(key_pair.id, key_dir, backup_dir)
        second = backups.backup_one(key_pair.id, key_dir, backup_dir)

        assert first != second
        assert len(backups.list(backup_dir)) == 2

    def test_unknown_key(self, backups, key_dir, backup_dir):
        with pytest.raises(StorageError) as exc_info:
            backups.backup_one(uuid.uuid4(), key_dir, backup_dir)
        assert exc_info.value.error_code == "KEY_NOT_FOUND"

    def test_weak_passphrase_rejected_before_copy(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        with pytest.raises(StorageError) as exc_info:
            backups.backup_one(key_pair.id, key_dir, backup_dir, passphrase="short")

        assert exc_info.value.error_code == "WEAK_PASSPHRASE"
        assert backups.list(backup_dir) == []

    def test_audit_event(self, backups, key_dir, backup_dir, saved_key, audit_sink):
        key_pair = saved_key()
        backups.backup_one(key_pair.id, key_dir, backup_dir)
        assert audit_sink.operations()[-1] == "BACKUP"

    def test_backup_all(self, backups, key_dir, backup_dir, saved_key):
        ids = {saved_key().id, saved_key(algorithm=KeyAlgorithm.ECDSA_P256).id}

        paths = backups.backup_all(key_dir, backup_dir)

        assert len(paths) == 2
        assert {uuid.UUID(m.key_id) for m in backups.list(backup_dir)} == ids


class TestRestore:
    """Test cases for restore"""

    def test_roundtrip(self, backups, store, key_dir, backup_dir, saved_key, tmp_path):
        """Test that a restored key is identical to the backed up key"""
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        target = tmp_path / "restored"

        key_id = backups.restore(path, target)

        assert key_id == key_pair.id
        restored = store.load(key_id, target)
        assert restored.private_key == key_pair.private_key
        assert restored.public_key == key_pair.public_key
        assert restored.metadata == store.find(key_pair.id, key_dir).metadata

        record = store.find(key_id, target)
        with open(record.metadata_path) as f:
            stored = json.load(f)
        assert stored['private_key_path'] == str(target / os.path.basename(record.private_key_path))
        assert store.check_consistency(target) == []

    def test_restore_overwrites_deleted_key(self, backups, store, key_dir, backup_dir, saved_key, audit_sink):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        store.delete(key_pair.id, key_dir)

        backups.restore(path, key_dir)

        assert store.load(key_pair.id, key_dir).private_key == key_pair.private_key
        assert audit_sink.operations()[-1] == "RESTORE"

    def test_restore_over_same_key(self, backups, store, key_dir, backup_dir, saved_key):
        key_pair = saved_key(name="id_work")
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)

        assert backups.restore(path, key_dir) == key_pair.id
        assert [r.id for r in store.list(key_dir)] == [key_pair.id]

    def test_restore_refuses_other_key_with_same_name(self, backups, store, key_dir, backup_dir, saved_key):
        """Test that restore never replaces a different key holding the name"""
        original = saved_key(name="id_work")
        path = backups.backup_one(original.id, key_dir, backup_dir)
        store.delete(original.id, key_dir)
        current = saved_key(name="id_work")
        before = {name: (key_dir / name).read_bytes() for name in os.listdir(key_dir)}

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, key_dir)

        assert exc_info.value.error_code == "KEY_NAME_COLLISION"
        assert exc_info.value.details['existing_id'] == str(current.id)
        assert {name: (key_dir / name).read_bytes() for name in os.listdir(key_dir)} == before
        assert [r.id for r in store.list(key_dir)] == [current.id]

    def test_restore_refuses_key_stored_under_other_name(self, backups, store, key_dir, backup_dir, saved_key):
        """Test that restore does not create a second record with the same id"""
        key_pair = saved_key(name="id_work")
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        for name in ("id_work", "id_work.pub", "id_work.json"):
            os.rename(os.path.join(path, name), os.path.join(path, name.replace("work", "other")))

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, key_dir)

        assert exc_info.value.error_code == "DUPLICATE_KEY_ID"
        assert not (key_dir / "id_other").exists()
        assert [r.id for r in store.list(key_dir)] == [key_pair.id]

    def test_missing_manifest(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        os.remove(os.path.join(path, MANIFEST_NAME))

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, key_dir)
        assert exc_info.value.error_code == "MANIFEST_MISSING"

    def test_invalid_manifest(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        with open(os.path.join(path, MANIFEST_NAME), 'w') as f:
            json.dump({'backup_date': "x", 'key_id': "not-a-uuid"}, f)

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, key_dir)
        assert exc_info.value.error_code == "INVALID_MANIFEST"

    def test_missing_public_key(self, backups, key_dir, backup_dir, saved_key, tmp_path):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir)
        for name in os.listdir(path):
            if name.endswith(".pub"):
                os.remove(os.path.join(path, name))

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, tmp_path / "restored")

        assert exc_info.value.error_code == "BACKUP_INCOMPLETE"
        assert exc_info.value.details['missing'] == ['public']
        assert not (tmp_path / "restored").exists()


class TestEncryptedBackups:
    """Test cases for passphrase-sealed backups"""

    def test_encrypted_roundtrip(self, backups, store, key_dir, backup_dir, saved_key, tmp_path):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir, passphrase=PASSPHRASE)

        private_copy = os.path.join(path, os.path.basename(store.find(key_pair.id, key_dir).private_key_path))
        with open(private_copy, 'rb') as f:
            sealed = f.read()
        assert key_pair.private_key not in sealed
        assert backups.list(backup_dir)[0].encrypted is True

        target = tmp_path / "restored"
        backups.restore(path, target, passphrase=PASSPHRASE)
        assert store.load(key_pair.id, target).private_key == key_pair.private_key

    def test_passphrase_required(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir, passphrase=PASSPHRASE)

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, key_dir)
        assert exc_info.value.error_code == "PASSPHRASE_REQUIRED"

    def test_wrong_passphrase(self, backups, key_dir, backup_dir, saved_key, tmp_path):
        key_pair = saved_key()
        path = backups.backup_one(key_pair.id, key_dir, backup_dir, passphrase=PASSPHRASE)

        with pytest.raises(StorageError) as exc_info:
            backups.restore(path, tmp_path / "restored", passphrase="incorrect horse")
        assert exc_info.value.error_code == "DECRYPTION_FAILED"

    def test_envelope(self):
        envelope = seal_private_key(b"secret key bytes", PASSPHRASE)
        data = json.loads(envelope)

        assert data['version'] == 1
        assert data['kdf'] == "scrypt"
        assert data['encryption'] == "chacha20-poly1305"
        assert open_private_key(envelope, PASSPHRASE) == b"secret key bytes"

    def test_envelope_tampered(self):
        with pytest.raises(StorageError) as exc_info:
            open_private_key(b"{\"version\": 2}", PASSPHRASE)
        assert exc_info.value.error_code == "INVALID_ENVELOPE"

    @pytest.mark.parametrize("passphrase,code", [
        ("1234567", "WEAK_PASSPHRASE"),
        (b"bytes-passphrase", "INVALID_PASSPHRASE_TYPE"),
    ])
    def test_validate_passphrase(self, passphrase, code):
        with pytest.raises(StorageError) as exc_info:
            validate_passphrase(passphrase)
        assert exc_info.value.error_code == code


class TestListAndClean:
    """Test cases for listing and retention"""

    def test_list_newest_first(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        for _ in range(3):
            backups.backup_one(key_pair.id, key_dir, backup_dir)

        dates = [m.backup_date for m in backups.list(backup_dir)]
        assert dates == sorted(dates, reverse=True)

    def test_list_skips_broken(self, backups, backup_dir, caplog):
        broken = backup_dir / "backup_broken"
        broken.mkdir(parents=True)
        (broken / MANIFEST_NAME).write_text("nope")
        (backup_dir / "not_a_backup").mkdir()

        assert backups.list(backup_dir) == []

    def test_list_missing_directory(self, backups, tmp_path):
        assert backups.list(tmp_path / "absent") == []

    def test_clean_old_keeps_newest_per_key(self, backups, key_dir, backup_dir, saved_key, audit_sink):
        """Test that retention applies per key id"""
        first = saved_key()
        second = saved_key()
        for _ in range(4):
            backups.backup_one(first.id, key_dir, backup_dir)
        backups.backup_one(second.id, key_dir, backup_dir)
        newest_first = [m.path for m in backups.list(backup_dir) if m.key_id == str(first.id)][:2]

        assert backups.clean_old(backup_dir, keep=2) == 2

        remaining = backups.list(backup_dir)
        assert sorted(m.path for m in remaining if m.key_id == str(first.id)) == sorted(newest_first)
        assert [m.key_id for m in remaining].count(str(second.id)) == 1
        assert audit_sink.operations()[-1] == "CLEANUP"

    def test_clean_old_keep_zero(self, backups, key_dir, backup_dir, saved_key):
        key_pair = saved_key()
        backups.backup_one(key_pair.id, key_dir, backup_dir)

        assert backups.clean_old(backup_dir, keep=0) == 1
        assert backups.list(backup_dir) == []

    def test_clean_old_negative(self, backups, backup_dir):
        with pytest.raises(StorageError) as exc_info:
            backups.clean_old(backup_dir, keep=-1)
        assert exc_info.value.error_code == "INVALID_RETENTION"
