"""
Key rotation for CIcaDA

Rotation retires a key by backing it up, generating a replacement with the
same algorithm, email and purpose, storing it under a fresh id and marking the
old record as superseded. The old record is never deleted here.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..exceptions import CicadaError, KeyGenerationError, StorageError
from ..logging_utils import AuditSink, get_default_audit_sink
from .backup import BackupManager
from .keygen import generate_key_pair
from .provider import KeyMaterialProvider, get_default_provider
from .storage import KeyStore, PathLike
from .types import (
    KeyId,
    KeyMetadata,
    RotationMapping,
    StoredKeyRecord,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

# Constants for key rotation
DEFAULT_WARNING_DAYS = 30
DEFAULT_NEW_EXPIRY_DAYS = 365


class KeyState(Enum):
    """Lifecycle state of a stored key, computed from its metadata"""
    ACTIVE = 'ACTIVE'
    EXPIRING_SOON = 'EXPIRING_SOON'
    EXPIRED = 'EXPIRED'
    SUPERSEDED = 'SUPERSEDED'


def key_state(record: Union[StoredKeyRecord, KeyMetadata],
              warning_days: int = DEFAULT_WARNING_DAYS,
              now: Optional[datetime] = None) -> KeyState:
    """Classify a key; a superseded key stays SUPERSEDED whatever its expiry"""
    now = now or utc_now()
    if record.superseded_by is not None:
        return KeyState.SUPERSEDED
    if record.expires_at is None:
        return KeyState.ACTIVE
    if now > record.expires_at:
        return KeyState.EXPIRED
    if now + timedelta(days=warning_days) > record.expires_at:
        return KeyState.EXPIRING_SOON
    return KeyState.ACTIVE


class RotationEngine:
    """
    Retire-and-replace workflow for stored keys

    Args:
        store: KeyStore holding the keys
        backups: BackupManager used to back up a key before it is replaced
        provider: Key material provider for the replacement keys
        audit_sink: Receives rotation and security events
    """

    def __init__(self, store: KeyStore, backups: BackupManager,
                 provider: Optional[KeyMaterialProvider] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.backups = backups
        self.provider = provider or get_default_provider()
        self.audit_sink = audit_sink or get_default_audit_sink()

    def key_state(self, record: Union[StoredKeyRecord, KeyMetadata],
                  warning_days: int = DEFAULT_WARNING_DAYS) -> KeyState:
        return key_state(record, warning_days)

    def rotate_one(self, key_id: KeyId, key_dir: PathLike, backup_dir: PathLike,
                   comment: Optional[str] = None,
                   expires_at: Optional[datetime] = None,
                   passphrase: Optional[str] = None) -> RotationMapping:
        """
        Rotate one key

        Args:
            key_id: Id of the key to retire
            key_dir: Key directory
            backup_dir: Backup directory
            comment: Comment for the new key (defaults to the old comment)
            expires_at: Expiry of the new key (None for no expiry)
            passphrase: Seal the backup of the old private key

        Returns:
            RotationMapping: (old_id, new_id)

        Raises:
            StorageError: If the key is unknown or a storage step fails
            KeyGenerationError: If the replacement key cannot be generated
        """
        record = self.store.find(key_id, key_dir)
        if record is None:
            raise StorageError(f"Key not found: {key_id}", "KEY_NOT_FOUND")
        if record.metadata.superseded_by is not None:
            raise StorageError(
                f"Key {record.id} was already rotated to {record.metadata.superseded_by}",
                "KEY_SUPERSEDED",
                {'key_id': str(record.id), 'superseded_by': str(record.metadata.superseded_by)}
            )

        logger.info(f"Rotating key {record.id}")
        try:
            backup_path = self.backups.backup_one(record.id, key_dir, backup_dir, passphrase)
            new_pair = generate_key_pair(
                record.metadata.algorithm,
                record.metadata.email,
                comment=record.metadata.comment if comment is None else comment,
                expires_at=expires_at,
                purpose=record.metadata.purpose,
                provider=self.provider,
                audit_sink=self.audit_sink,
            )
            self.store.save(new_pair, key_dir)
        except (KeyGenerationError, StorageError):
            raise
        except Exception as e:
            raise StorageError(f"Rotation of key {record.id} failed: {e}", "ROTATION_FAILED") from e

        try:
            self.store.mark_superseded(record.id, new_pair.id, key_dir)
        except Exception as e:
            # The replacement is already stored; report it so it can be found
            logger.error(f"Key {new_pair.id} was stored but {record.id} could not be marked superseded: {e}")
            details = {'old_id': str(record.id), 'new_id': str(new_pair.id)}
            if isinstance(e, StorageError):
                details['error_code'] = e.error_code
            raise StorageError(
                f"Rotation of key {record.id} failed after storing {new_pair.id}: {e}",
                "ROTATION_FAILED", details
            ) from e

        mapping = RotationMapping(old_id=record.id, new_id=new_pair.id)
        logger.info(f"Rotated key {mapping.old_id} -> {mapping.new_id} (backup: {backup_path})")
        self.audit_sink.key_operation(
            "ROTATE", f"Key {mapping.old_id} rotated to {mapping.new_id}",
            old_id=str(mapping.old_id), new_id=str(mapping.new_id), backup_path=backup_path
        )
        return mapping

    def _rotate_batch(self, records: List[StoredKeyRecord], key_dir: PathLike, backup_dir: PathLike,
                      new_expiry_days: int, passphrase: Optional[str]) -> List[RotationMapping]:
        rotated: List[RotationMapping] = []
        for record in records:
            expires_at = utc_now() + timedelta(days=new_expiry_days)
            try:
                rotated.append(self.rotate_one(
                    record.id, key_dir, backup_dir,
                    comment=record.metadata.comment,
                    expires_at=expires_at,
                    passphrase=passphrase,
                ))
            except CicadaError as e:
                logger.error(f"Rotation aborted at key {record.id}: {e}")
                raise StorageError(
                    f"Rotation aborted at key {record.id} after {len(rotated)} rotated: {e}",
                    "ROTATION_ABORTED",
                    {'rotated': rotated, 'failed_key': str(record.id)}
                ) from e
        return rotated

    def auto_rotate_expiring(self, key_dir: PathLike, backup_dir: PathLike,
                             warning_days: int = DEFAULT_WARNING_DAYS,
                             new_expiry_days: int = DEFAULT_NEW_EXPIRY_DAYS,
                             passphrase: Optional[str] = None) -> List[RotationMapping]:
        """
        Rotate every key that expires within ``warning_days``

        Keys without expiry and keys already superseded are skipped. The batch
        stops at the first failure with a ``StorageError`` whose
        ``details['rotated']`` holds the rotations already completed.
        """
        threshold = utc_now() + timedelta(days=warning_days)
        due = [
            r for r in self.store.list(key_dir)
            if r.metadata.superseded_by is None
            and r.metadata.expires_at is not None
            and r.metadata.expires_at < threshold
        ]
        if not due:
            logger.info("No keys due for rotation")
            return []

        logger.info(f"{len(due)} keys due for rotation")
        return self._rotate_batch(due, key_dir, backup_dir, new_expiry_days, passphrase)

    def rotate_all(self, key_dir: PathLike, backup_dir: PathLike,
                   new_expiry_days: int = DEFAULT_NEW_EXPIRY_DAYS,
                   passphrase: Optional[str] = None) -> List[RotationMapping]:
        """Rotate every key that is not already superseded"""
        records = [r for r in self.store.list(key_dir) if r.metadata.superseded_by is None]
        self.audit_sink.security(f"Rotation of all keys requested ({len(records)} keys)")
        rotated = self._rotate_batch(records, key_dir, backup_dir, new_expiry_days, passphrase)
        self.audit_sink.security(f"Rotation of all keys completed: {len(rotated)} keys rotated")
        return rotated

    def rotation_report(self, key_dir: PathLike,
                        warning_days: int = DEFAULT_WARNING_DAYS) -> Dict[str, Any]:
        """
        Classify every stored key by expiry

        Returns:
            dict with ``total_keys``, ``expired``, ``expiring_soon``,
            ``healthy``, ``no_expiration``, ``superseded`` and
            ``expiring_keys`` (the expired and expiring-soon keys)
        """
        now = utc_now()
        records = self.store.list(key_dir)
        report: Dict[str, Any] = {
            'total_keys': len(records),
            'expired': 0,
            'expiring_soon': 0,
            'healthy': 0,
            'no_expiration': 0,
            'superseded': 0,
            'expiring_keys': [],
        }

        for record in records:
            state = key_state(record.metadata, warning_days, now)
            if state == KeyState.SUPERSEDED:
                report['superseded'] += 1
            elif record.metadata.expires_at is None:
                report['no_expiration'] += 1
            elif state == KeyState.EXPIRED:
                report['expired'] += 1
            elif state == KeyState.EXPIRING_SOON:
                report['expiring_soon'] += 1
            else:
                report['healthy'] += 1

            if state in (KeyState.EXPIRED, KeyState.EXPIRING_SOON):
                report['expiring_keys'].append({
                    'id': str(record.id),
                    'email': record.metadata.email,
                    'expires_at': format_timestamp(record.metadata.expires_at),
                    'status': state.value,
                })

        return report
