"""
Key backup and restore for CIcaDA

A backup is a directory ``backup_<id>_<yyyymmdd_HHMMSS>`` inside the backup
directory holding copies of the three key files and a ``manifest.json``.
When a passphrase is given the private key copy is sealed with a key derived
by Scrypt and encrypted with ChaCha20-Poly1305.
"""

import base64
import json
import logging
import os
import secrets
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from ..exceptions import CicadaError, StorageError
from ..logging_utils import AuditSink, get_default_audit_sink
from .storage import (
    KeyStore,
    METADATA_PERMISSIONS,
    METADATA_SUFFIX,
    PRIVATE_KEY_PERMISSIONS,
    PUBLIC_KEY_PERMISSIONS,
    PUBLIC_KEY_SUFFIX,
    STAGING_PREFIX,
    PathLike,
    ensure_directory,
    read_metadata_file,
    write_file,
)
from .types import BackupManifest, KeyId, utc_now

logger = logging.getLogger(__name__)

# Constants for backup operations
MANIFEST_NAME = "manifest.json"
BACKUP_PREFIX = "backup_"
BACKUP_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
DEFAULT_KEEP = 5

ENVELOPE_VERSION = 1
SALT_LENGTH = 32
NONCE_LENGTH = 12
KEY_LENGTH = 32
MIN_PASSPHRASE_LENGTH = 8

# KDF parameters
SCRYPT_N = 32768
SCRYPT_R = 8
SCRYPT_P = 1


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = Scrypt(length=KEY_LENGTH, salt=salt, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode('utf-8'))


def validate_passphrase(passphrase: str) -> None:
    """
    Reject passphrases that are too short to seal a backup

    Raises:
        StorageError: If the passphrase is not a string of at least 8 characters
    """
    if not isinstance(passphrase, str):
        raise StorageError("Passphrase must be a string", "INVALID_PASSPHRASE_TYPE")
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise StorageError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters",
            "WEAK_PASSPHRASE"
        )


def seal_private_key(private_key: bytes, passphrase: str) -> bytes:
    """
    Encrypt private key bytes into a JSON envelope

    Raises:
        StorageError: If the passphrase is rejected or encryption fails
    """
    validate_passphrase(passphrase)
    salt = secrets.token_bytes(SALT_LENGTH)
    nonce = secrets.token_bytes(NONCE_LENGTH)
    try:
        ciphertext = ChaCha20Poly1305(_derive_key(passphrase, salt)).encrypt(nonce, private_key, None)
    except Exception as e:
        raise StorageError(f"Backup encryption failed: {e}", "ENCRYPTION_FAILED") from e

    envelope = {
        'version': ENVELOPE_VERSION,
        'kdf': 'scrypt',
        'kdf_params': {'n': SCRYPT_N, 'r': SCRYPT_R, 'p': SCRYPT_P},
        'encryption': 'chacha20-poly1305',
        'salt': base64.b64encode(salt).decode('ascii'),
        'nonce': base64.b64encode(nonce).decode('ascii'),
        'ciphertext': base64.b64encode(ciphertext).decode('ascii'),
    }
    return json.dumps(envelope, indent=2).encode('utf-8')


def open_private_key(envelope: bytes, passphrase: str) -> bytes:
    """
    Decrypt a JSON envelope produced by ``seal_private_key``

    Raises:
        StorageError: If the envelope is malformed or the passphrase is wrong
    """
    try:
        data = json.loads(envelope.decode('utf-8'))
        if data.get('version') != ENVELOPE_VERSION:
            raise ValueError(f"unsupported envelope version {data.get('version')!r}")
        salt = base64.b64decode(data['salt'])
        nonce = base64.b64decode(data['nonce'])
        ciphertext = base64.b64decode(data['ciphertext'])
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise StorageError(f"Invalid encrypted key envelope: {e}", "INVALID_ENVELOPE") from e

    try:
        return ChaCha20Poly1305(_derive_key(passphrase, salt)).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise StorageError(
            "Decryption failed - invalid passphrase or corrupted data",
            "DECRYPTION_FAILED"
        ) from e


def _make_backup_dir(backup_root: Path, base_name: str) -> Path:
    path = backup_root / base_name
    counter = 1
    while path.exists():
        path = backup_root / f"{base_name}_{counter}"
        counter += 1
    path.mkdir(mode=0o700)
    os.chmod(path, 0o700)
    return path


class BackupManager:
    """
    Point-in-time copies of key records with per-key retention

    Args:
        store: KeyStore used to locate records
        audit_sink: Receives backup and restore events
    """

    def __init__(self, store: KeyStore, audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.audit_sink = audit_sink or get_default_audit_sink()

    def backup_one(self, key_id: KeyId, key_dir: PathLike, backup_dir: PathLike,
                   passphrase: Optional[str] = None) -> str:
        """
        Back up one key record

        Args:
            key_id: Id of the key to back up
            key_dir: Key directory
            backup_dir: Backup directory (created with mode 0700)
            passphrase: Seal the private key copy with this passphrase

        Returns:
            str: Path of the new backup directory

        Raises:
            StorageError: If the key is unknown or the copy fails
        """
        record = self.store.find(key_id, key_dir)
        if record is None:
            raise StorageError(f"Key not found: {key_id}", "KEY_NOT_FOUND")

        if passphrase is not None:
            validate_passphrase(passphrase)

        backup_root = ensure_directory(backup_dir)
        now = utc_now()
        try:
            path = _make_backup_dir(backup_root, f"{BACKUP_PREFIX}{record.id}_{now:%Y%m%d_%H%M%S}")
        except OSError as e:
            raise StorageError(f"Failed to create backup directory: {e}", "BACKUP_FAILED") from e

        manifest = BackupManifest(
            backup_date=now.strftime(BACKUP_DATE_FORMAT),
            key_id=str(record.id),
            algorithm=record.metadata.algorithm.name,
            email=record.metadata.email,
            encrypted=passphrase is not None,
        )

        try:
            with open(record.private_key_path, 'rb') as f:
                private_key = f.read()
            if passphrase is not None:
                private_key = seal_private_key(private_key, passphrase)
            write_file(path / Path(record.private_key_path).name, private_key, PRIVATE_KEY_PERMISSIONS)

            public_copy = path / Path(record.public_key_path).name
            shutil.copyfile(record.public_key_path, public_copy)
            os.chmod(public_copy, PUBLIC_KEY_PERMISSIONS)

            metadata_copy = path / Path(record.metadata_path).name
            shutil.copyfile(record.metadata_path, metadata_copy)
            os.chmod(metadata_copy, METADATA_PERMISSIONS)

            write_file(
                path / MANIFEST_NAME,
                json.dumps(manifest.to_dict(), indent=2).encode('utf-8'),
                METADATA_PERMISSIONS,
            )
        except (OSError, StorageError) as e:
            shutil.rmtree(path, ignore_errors=True)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Failed to back up key {record.id}: {e}", "BACKUP_FAILED") from e

        logger.info(f"Backed up key {record.id} to {path}")
        self.audit_sink.key_operation(
            "BACKUP", f"Key {record.id} backed up to {path}",
            key_id=str(record.id), encrypted=manifest.encrypted
        )
        return str(path)

    def backup_all(self, key_dir: PathLike, backup_dir: PathLike,
                   passphrase: Optional[str] = None) -> List[str]:
        """
        Back up every stored key; a failing key is logged and skipped

        Returns:
            List of the backup paths that were created
        """
        paths = []
        for record in self.store.list(key_dir):
            try:
                paths.append(self.backup_one(record.id, key_dir, backup_dir, passphrase))
            except CicadaError as e:
                logger.warning(f"Failed to back up key {record.id}: {e}")
        return paths

    def _read_manifest(self, backup_path: Path) -> BackupManifest:
        manifest_path = backup_path / MANIFEST_NAME
        if not manifest_path.is_file():
            raise StorageError(f"Backup manifest not found in {backup_path}", "MANIFEST_MISSING")
        try:
            with open(manifest_path, 'r', encoding='utf-8') as f:
                manifest = BackupManifest.from_dict(json.load(f), path=str(backup_path))
            uuid.UUID(manifest.key_id)
            return manifest
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageError(f"Invalid backup manifest in {backup_path}: {e}", "INVALID_MANIFEST") from e

    def _check_destination(self, key_id: uuid.UUID, key_dir: PathLike,
                           metadata_name: str, private_name: str, public_name: str) -> None:
        """Refuse a restore that would replace another key or duplicate this one"""
        directory = Path(key_dir).expanduser()
        metadata_path = directory / metadata_name
        existing = [
            p for p in (directory / private_name, directory / public_name, metadata_path)
            if p.exists()
        ]
        if existing:
            try:
                owner = read_metadata_file(metadata_path).id
            except (OSError, ValueError, KeyError, TypeError, CicadaError):
                owner = None
            if owner != key_id:
                raise StorageError(
                    f"A different key record named '{private_name}' already exists in {directory}",
                    "KEY_NAME_COLLISION",
                    {'name': private_name, 'existing': [str(p) for p in existing],
                     'existing_id': str(owner) if owner else None}
                )
            return

        record = self.store.find(key_id, directory)
        if record is not None:
            raise StorageError(
                f"Key {key_id} is already stored as {record.private_key_path}",
                "DUPLICATE_KEY_ID",
                {'key_id': str(key_id), 'existing': record.private_key_path}
            )

    def restore(self, backup_path: PathLike, key_dir: PathLike,
                passphrase: Optional[str] = None) -> uuid.UUID:
        """
        Restore a backup into the key directory

        Files are classified by suffix: ``.pub`` is the public key, the other
        ``.json`` is the metadata and anything else is the private key. The
        stored key paths in the metadata are rewritten to ``key_dir``.

        Returns:
            uuid.UUID: Id of the restored key

        Raises:
            StorageError: If the manifest or a key file is missing, the backup
                is encrypted and no passphrase was given, or the copy fails
        """
        backup_path = Path(backup_path).expanduser()
        manifest = self._read_manifest(backup_path)

        files: Dict[str, Path] = {}
        for entry in sorted(backup_path.iterdir()):
            if not entry.is_file() or entry.name == MANIFEST_NAME:
                continue
            if entry.name.endswith(PUBLIC_KEY_SUFFIX):
                files['public'] = entry
            elif entry.name.endswith(METADATA_SUFFIX):
                files['metadata'] = entry
            else:
                files['private'] = entry

        missing = [kind for kind in ('private', 'public', 'metadata') if kind not in files]
        if missing:
            raise StorageError(
                f"Backup {backup_path} is incomplete: missing {', '.join(missing)} key file",
                "BACKUP_INCOMPLETE",
                {'missing': missing}
            )

        try:
            with open(files['private'], 'rb') as f:
                private_key = f.read()
            with open(files['public'], 'rb') as f:
                public_key = f.read()
            with open(files['metadata'], 'r', encoding='utf-8') as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read backup {backup_path}: {e}", "RESTORE_FAILED") from e

        if manifest.encrypted:
            if passphrase is None:
                raise StorageError("Backup is encrypted; a passphrase is required", "PASSPHRASE_REQUIRED")
            private_key = open_private_key(private_key, passphrase)

        key_id = uuid.UUID(manifest.key_id)
        self._check_destination(key_id, key_dir, files['metadata'].name,
                                files['private'].name, files['public'].name)

        destination = ensure_directory(key_dir)
        targets = [
            (destination / files['metadata'].name, None, METADATA_PERMISSIONS),
            (destination / files['public'].name, public_key, PUBLIC_KEY_PERMISSIONS),
            (destination / files['private'].name, private_key, PRIVATE_KEY_PERMISSIONS),
        ]
        metadata['public_key_path'] = str(targets[1][0])
        metadata['private_key_path'] = str(targets[2][0])
        targets[0] = (targets[0][0], json.dumps(metadata, indent=2).encode('utf-8'), METADATA_PERMISSIONS)

        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=destination))
        moved: List[Path] = []
        try:
            for target, data, mode in targets:
                write_file(staging / target.name, data, mode)
            for target, _, _ in targets:
                os.replace(staging / target.name, target)
                moved.append(target)
        except OSError as e:
            for target in moved:
                try:
                    target.unlink()
                except OSError as cleanup_error:
                    logger.error(f"Failed to roll back {target}: {cleanup_error}")
            raise StorageError(f"Failed to restore backup {backup_path}: {e}", "RESTORE_FAILED") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Restored key {key_id} from {backup_path}")
        self.audit_sink.key_operation(
            "RESTORE", f"Key {key_id} restored from {backup_path}", key_id=str(key_id)
        )
        return key_id

    def list(self, backup_dir: PathLike) -> List[BackupManifest]:
        """List backups with a readable manifest, newest first"""
        backup_root = Path(backup_dir).expanduser()
        if not backup_root.is_dir():
            return []

        manifests = []
        for entry in backup_root.iterdir():
            if not entry.is_dir() or not (entry / MANIFEST_NAME).is_file():
                continue
            try:
                manifests.append(self._read_manifest(entry))
            except StorageError as e:
                logger.warning(f"Skipping backup {entry}: {e}")

        manifests.sort(key=lambda m: m.backup_date, reverse=True)
        return manifests

    def clean_old(self, backup_dir: PathLike, keep: int = DEFAULT_KEEP) -> int:
        """
        Keep only the ``keep`` most recent backups of each key id

        Returns:
            int: Number of backup directories removed
        """
        if keep < 0:
            raise StorageError("keep must be zero or greater", "INVALID_RETENTION")

        by_key: Dict[str, List[BackupManifest]] = {}
        for manifest in self.list(backup_dir):
            by_key.setdefault(manifest.key_id, []).append(manifest)

        removed = 0
        for key_id, manifests in by_key.items():
            for manifest in manifests[keep:]:
                try:
                    shutil.rmtree(manifest.path)
                except OSError as e:
                    logger.warning(f"Failed to remove backup {manifest.path}: {e}")
                    continue
                removed += 1
                logger.debug(f"Removed old backup {manifest.path}")

        if removed:
            self.audit_sink.key_operation("CLEANUP", f"Removed {removed} old backups from {backup_dir}")
        return removed
