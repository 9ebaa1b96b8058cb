"""
Key storage for CIcaDA

Each key is kept as three sibling files in a key directory:

    <name>        private key (0600)
    <name>.pub    public key line (0644)
    <name>.json   metadata (0600)

Multi-file writes and deletes go through a staging directory inside the key
directory so an interrupted operation never leaves a record that ``list``
would report with only part of its files.
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union, Any

from ..exceptions import CicadaError, StorageError
from ..logging_utils import AuditSink, get_default_audit_sink
from .provider import KeyMaterialProvider, get_default_provider
from .types import KeyId, KeyMetadata, KeyPair, StoredKeyRecord, normalize_key_id

logger = logging.getLogger(__name__)

# Constants
DIRECTORY_PERMISSIONS = 0o700
PRIVATE_KEY_PERMISSIONS = 0o600
PUBLIC_KEY_PERMISSIONS = 0o644
METADATA_PERMISSIONS = 0o600
PUBLIC_KEY_SUFFIX = ".pub"
METADATA_SUFFIX = ".json"
STAGING_PREFIX = ".cicada-staging-"
FINGERPRINT_ERROR = "error"

PathLike = Union[str, Path]


def default_key_name(metadata: KeyMetadata) -> str:
    """Default base name: ``id_<algorithm>_<first 8 chars of id>``"""
    return f"id_{metadata.algorithm.value}_{str(metadata.id)[:8]}"


def ensure_directory(directory: PathLike) -> Path:
    """
    Create a directory (and parents) restricted to the owner

    Raises:
        StorageError: If the directory cannot be created
    """
    path = Path(directory).expanduser()
    try:
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, DIRECTORY_PERMISSIONS)
    except OSError as e:
        raise StorageError(
            f"Failed to create directory {path}: {e}",
            "DIRECTORY_CREATION_FAILED"
        ) from e
    return path


def write_file(path: Path, data: bytes, mode: int) -> None:
    with open(path, 'wb') as f:
        f.write(data)
    os.chmod(path, mode)


def artifact_paths(directory: Path, name: str) -> Tuple[Path, Path, Path]:
    """(private, public, metadata) paths for a base name"""
    return (
        directory / name,
        directory / f"{name}{PUBLIC_KEY_SUFFIX}",
        directory / f"{name}{METADATA_SUFFIX}",
    )


def read_metadata_file(metadata_path: Path) -> KeyMetadata:
    """
    Read one metadata JSON file

    Raises:
        OSError, ValueError, KeyError, CicadaError: If the file is unreadable or malformed
    """
    with open(metadata_path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("metadata is not a JSON object")
    return KeyMetadata.from_dict(data)


def _record_dict(metadata: KeyMetadata, private_path: Path, public_path: Path) -> Dict[str, Any]:
    data = metadata.to_dict()
    data['public_key_path'] = str(public_path)
    data['private_key_path'] = str(private_path)
    return data


class KeyStore:
    """
    Durable storage of key records in a directory

    Args:
        provider: Used to fingerprint public keys on save
        audit_sink: Receives key operation events
    """

    def __init__(self, provider: Optional[KeyMaterialProvider] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.provider = provider or get_default_provider()
        self.audit_sink = audit_sink or get_default_audit_sink()

    def _fingerprint(self, public_key: bytes) -> str:
        try:
            return self.provider.fingerprint(public_key)
        except Exception as e:
            logger.warning(f"Failed to compute fingerprint: {e}")
            return FINGERPRINT_ERROR

    def save(self, key_pair: KeyPair, directory: PathLike,
             name: Optional[str] = None) -> Tuple[str, str, str]:
        """
        Persist a key pair as three files

        The fingerprint is computed and written into ``key_pair.metadata`` as
        well as the JSON file.

        Args:
            key_pair: Key pair to store
            directory: Key directory (created with mode 0700)
            name: Base file name, defaults to ``id_<algorithm>_<id prefix>``

        Returns:
            Tuple of (private_path, public_path, metadata_path)

        Raises:
            StorageError: On name collision, an id that is already stored or
                any I/O failure
        """
        directory = ensure_directory(directory)
        name = name or default_key_name(key_pair.metadata)
        if os.sep in name or (os.altsep and os.altsep in name) or name.startswith('.'):
            raise StorageError(f"Invalid key file name: {name!r}", "INVALID_KEY_NAME")
        # The private key file would be mistaken for a public key or metadata file
        if name.endswith((PUBLIC_KEY_SUFFIX, METADATA_SUFFIX)):
            raise StorageError(f"Invalid key file name: {name!r}", "INVALID_KEY_NAME")

        private_path, public_path, metadata_path = artifact_paths(directory, name)
        existing = [p for p in (private_path, public_path, metadata_path) if p.exists()]
        if existing:
            raise StorageError(
                f"A key record named '{name}' already exists in {directory}",
                "KEY_NAME_COLLISION",
                {'name': name, 'existing': [str(p) for p in existing]}
            )

        duplicate = self.find(key_pair.id, directory)
        if duplicate is not None:
            raise StorageError(
                f"Key {key_pair.id} is already stored as {duplicate.private_key_path}",
                "DUPLICATE_KEY_ID",
                {'key_id': str(key_pair.id), 'existing': duplicate.private_key_path}
            )

        key_pair.metadata.fingerprint = self._fingerprint(key_pair.public_key)
        metadata_json = json.dumps(
            _record_dict(key_pair.metadata, private_path, public_path), indent=2
        ).encode('utf-8')

        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=directory))
        moved: List[Path] = []
        try:
            # Private key goes last so a visible private key implies a complete record
            plan = [
                (metadata_path, metadata_json, METADATA_PERMISSIONS),
                (public_path, key_pair.public_key, PUBLIC_KEY_PERMISSIONS),
                (private_path, key_pair.private_key, PRIVATE_KEY_PERMISSIONS),
            ]
            for target, data, mode in plan:
                write_file(staging / target.name, data, mode)
            for target, _, _ in plan:
                os.replace(staging / target.name, target)
                moved.append(target)
        except OSError as e:
            for target in moved:
                try:
                    target.unlink()
                except OSError as cleanup_error:
                    logger.error(f"Failed to roll back {target}: {cleanup_error}")
            raise StorageError(f"Failed to save key {key_pair.id}: {e}", "SAVE_FAILED") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Saved key {key_pair.id} as {private_path}")
        self.audit_sink.key_operation(
            "SAVE", f"Key {key_pair.id} saved to {private_path}", key_id=str(key_pair.id)
        )
        return str(private_path), str(public_path), str(metadata_path)

    def _read_record(self, metadata_path: Path) -> Optional[StoredKeyRecord]:
        try:
            metadata = read_metadata_file(metadata_path)
        except (OSError, ValueError, KeyError, TypeError, CicadaError) as e:
            logger.warning(f"Skipping malformed metadata file {metadata_path}: {e}")
            return None

        private_path, public_path, _ = artifact_paths(metadata_path.parent, metadata_path.stem)
        if not private_path.is_file() or not public_path.is_file():
            logger.warning(f"Skipping incomplete key record {metadata_path.stem}: key file missing")
            return None

        return StoredKeyRecord(
            metadata=metadata,
            private_key_path=str(private_path),
            public_key_path=str(public_path),
            metadata_path=str(metadata_path),
        )

    def list(self, directory: PathLike) -> List[StoredKeyRecord]:
        """
        List the complete key records in a directory, newest first

        Malformed metadata and records with a missing key file are skipped.
        A missing directory yields an empty list.
        """
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            return []

        records = []
        for metadata_path in sorted(directory.glob(f"*{METADATA_SUFFIX}")):
            record = self._read_record(metadata_path)
            if record is not None:
                records.append(record)

        records.sort(key=lambda r: r.metadata.created_at, reverse=True)
        return records

    def find(self, key_id: KeyId, directory: PathLike) -> Optional[StoredKeyRecord]:
        """Find the stored record for an id, or None"""
        wanted = normalize_key_id(key_id)
        for record in self.list(directory):
            if record.id == wanted:
                return record
        return None

    def load(self, key_id: KeyId, directory: PathLike) -> Optional[KeyPair]:
        """
        Load a key pair by id

        Returns:
            KeyPair with the persisted metadata, or None if the id is unknown

        Raises:
            StorageError: If the record exists but its key files cannot be read
        """
        record = self.find(key_id, directory)
        if record is None:
            return None

        try:
            with open(record.public_key_path, 'rb') as f:
                public_key = f.read()
            with open(record.private_key_path, 'rb') as f:
                private_key = f.read()
        except OSError as e:
            raise StorageError(f"Failed to read key {record.id}: {e}", "LOAD_FAILED") from e

        return KeyPair(metadata=record.metadata, public_key=public_key, private_key=private_key)

    def delete(self, key_id: KeyId, directory: PathLike) -> bool:
        """
        Delete the three files of a key record

        Returns:
            bool: True if a record was found and deleted

        Raises:
            StorageError: If the files cannot be removed; already moved files are put back
        """
        record = self.find(key_id, directory)
        if record is None:
            return False

        paths = [Path(record.metadata_path), Path(record.public_key_path), Path(record.private_key_path)]
        staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=Path(record.metadata_path).parent))
        moved: List[Path] = []
        try:
            try:
                for path in paths:
                    os.replace(path, staging / path.name)
                    moved.append(path)
            except OSError as e:
                for path in moved:
                    try:
                        os.replace(staging / path.name, path)
                    except OSError as restore_error:
                        logger.error(f"Failed to restore {path}: {restore_error}")
                raise StorageError(f"Failed to delete key {record.id}: {e}", "DELETE_FAILED") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Deleted key {record.id}")
        self.audit_sink.key_operation("DELETE", f"Key {record.id} deleted", key_id=str(record.id))
        return True

    def export_public(self, key_id: KeyId, directory: PathLike, output_path: PathLike) -> str:
        """
        Copy the public key of a record to ``output_path``

        Raises:
            StorageError: If the id is unknown or the copy fails
        """
        record = self.find(key_id, directory)
        if record is None:
            raise StorageError(f"Key not found: {key_id}", "KEY_NOT_FOUND")

        output_path = Path(output_path).expanduser()
        try:
            shutil.copyfile(record.public_key_path, output_path)
            os.chmod(output_path, PUBLIC_KEY_PERMISSIONS)
        except OSError as e:
            raise StorageError(f"Failed to export public key: {e}", "EXPORT_FAILED") from e

        self.audit_sink.key_operation(
            "EXPORT", f"Public key {record.id} exported to {output_path}", key_id=str(record.id)
        )
        return str(output_path)

    def mark_superseded(self, key_id: KeyId, new_id: KeyId, directory: PathLike) -> StoredKeyRecord:
        """
        Record in the metadata of ``key_id`` that ``new_id`` replaced it

        Raises:
            StorageError: If the id is unknown or the metadata cannot be rewritten
        """
        record = self.find(key_id, directory)
        if record is None:
            raise StorageError(f"Key not found: {key_id}", "KEY_NOT_FOUND")

        record.metadata.superseded_by = normalize_key_id(new_id)
        metadata_path = Path(record.metadata_path)
        data = json.dumps(record.to_dict(), indent=2).encode('utf-8')
        temp_path = metadata_path.with_name(f"{STAGING_PREFIX}{metadata_path.name}")
        try:
            write_file(temp_path, data, METADATA_PERMISSIONS)
            os.replace(temp_path, metadata_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to update metadata for {record.id}: {e}", "METADATA_WRITE_FAILED") from e

        return record

    def check_consistency(self, directory: PathLike) -> List[Dict[str, Any]]:
        """
        Report partial records, unreadable metadata and leftover staging data

        Returns:
            List of issues, each ``{'name', 'missing', 'error'}``
        """
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            return []

        issues = []
        names = set()
        for entry in sorted(directory.iterdir()):
            if entry.name.startswith(STAGING_PREFIX):
                issues.append({'name': entry.name, 'missing': [], 'error': 'leftover staging data'})
                continue
            if not entry.is_file():
                continue
            if entry.name.endswith(METADATA_SUFFIX):
                names.add(entry.name[:-len(METADATA_SUFFIX)])
            elif entry.name.endswith(PUBLIC_KEY_SUFFIX):
                names.add(entry.name[:-len(PUBLIC_KEY_SUFFIX)])
            else:
                names.add(entry.name)

        for name in sorted(names):
            private_path, public_path, metadata_path = artifact_paths(directory, name)
            missing = [
                kind for kind, path in (
                    ('private', private_path), ('public', public_path), ('metadata', metadata_path)
                ) if not path.is_file()
            ]
            error = None
            if metadata_path.is_file():
                try:
                    read_metadata_file(metadata_path)
                except (OSError, ValueError, KeyError, TypeError, CicadaError) as e:
                    error = f"unreadable metadata: {e}"
            if missing or error:
                issues.append({'name': name, 'missing': missing, 'error': error})

        return issues
