"""
Key validation and auditing

Structural checks are delegated to a ``KeyMaterialProvider``; this module
never parses key encodings itself. A failed check is reported as data and is
never raised.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..crypto.provider import KeyMaterialProvider, get_default_provider
from ..crypto.types import KeyAlgorithm, KeyMetadata, KeyPair, format_timestamp, utc_now
from ..exceptions import StorageError
from .policies import strength_verdict

logger = logging.getLogger(__name__)

DEFAULT_WARNING_DAYS = 30


def _key_tokens(public_key: bytes) -> List[str]:
    return public_key.decode('utf-8', 'replace').strip().split()[:2]


class Validator:
    """
    Structural, pairing, expiry and strength checks for key pairs

    Args:
        provider: Key material provider used for the structural checks
    """

    def __init__(self, provider: Optional[KeyMaterialProvider] = None):
        self.provider = provider or get_default_provider()

    def validate_public(self, public_key: bytes) -> bool:
        """Whether the bytes parse as a public key"""
        try:
            return bool(self.provider.check_public_key(public_key))
        except Exception as e:
            logger.warning(f"Public key validation failed: {e}")
            return False

    def validate_private(self, private_key: bytes) -> bool:
        """Whether a public key can be derived from the bytes"""
        try:
            self.provider.derive_public_key(private_key)
            return True
        except Exception as e:
            logger.warning(f"Private key validation failed: {e}")
            return False

    def verify_pairing(self, key_pair: KeyPair) -> bool:
        """
        Whether the private key derives the stored public key

        Only the key type and base64 blob are compared; comments are ignored.
        """
        try:
            derived = self.provider.derive_public_key(key_pair.private_key)
        except Exception as e:
            logger.warning(f"Key pair verification failed: {e}")
            return False

        derived_tokens = _key_tokens(derived)
        stored_tokens = _key_tokens(key_pair.public_key)
        if len(derived_tokens) < 2 or len(stored_tokens) < 2:
            return False
        return derived_tokens == stored_tokens

    def is_expired(self, metadata: KeyMetadata, now: Optional[datetime] = None) -> bool:
        if metadata.expires_at is None:
            return False
        return (now or utc_now()) > metadata.expires_at

    def expires_soon(self, metadata: KeyMetadata, warning_days: int = DEFAULT_WARNING_DAYS,
                     now: Optional[datetime] = None) -> bool:
        """True when the key expires within ``warning_days`` and has not expired yet"""
        if metadata.expires_at is None:
            return False
        now = now or utc_now()
        return now + timedelta(days=warning_days) > metadata.expires_at and not self.is_expired(metadata, now)

    def validate_strength(self, algorithm: KeyAlgorithm) -> Tuple[bool, str]:
        verdict = strength_verdict(KeyAlgorithm.parse(algorithm))
        return verdict.strong, verdict.message

    def validate_key_pair(self, key_pair: KeyPair,
                          warning_days: int = DEFAULT_WARNING_DAYS) -> Tuple[bool, List[str]]:
        """
        Run every check on a key pair

        Checks run in order: public format, private format, pairing, expiry
        (expired wins over expiring soon), strength.

        Returns:
            Tuple of (valid, issues); valid is True iff issues is empty
        """
        issues = []
        metadata = key_pair.metadata

        if not self.validate_public(key_pair.public_key):
            issues.append("Invalid public key format")
        if not self.validate_private(key_pair.private_key):
            issues.append("Invalid private key format")
        if not self.verify_pairing(key_pair):
            issues.append("Public and private keys do not match")

        now = utc_now()
        if self.is_expired(metadata, now):
            issues.append(f"Key has expired on {format_timestamp(metadata.expires_at)}")
        elif self.expires_soon(metadata, warning_days, now):
            issues.append(f"Key expires soon on {format_timestamp(metadata.expires_at)}")

        strong, message = self.validate_strength(metadata.algorithm)
        if not strong:
            issues.append(message)

        return len(issues) == 0, issues

    def audit_key(self, key_pair: KeyPair, warning_days: int = DEFAULT_WARNING_DAYS) -> Dict[str, Any]:
        """Audit report for one key pair, meant for display or JSON output"""
        metadata = key_pair.metadata
        now = utc_now()
        valid, issues = self.validate_key_pair(key_pair, warning_days)
        strong, message = self.validate_strength(metadata.algorithm)

        return {
            'id': str(metadata.id),
            'email': metadata.email,
            'algorithm': metadata.algorithm.display_name,
            'key_size': metadata.algorithm.key_size,
            'quantum_resistant': metadata.quantum_resistant,
            'fingerprint': metadata.fingerprint,
            'created_at': format_timestamp(metadata.created_at),
            'age_days': (now - metadata.created_at).days,
            'expiration': format_timestamp(metadata.expires_at) if metadata.expires_at else "Never",
            'expired': self.is_expired(metadata, now),
            'expires_soon': self.expires_soon(metadata, warning_days, now),
            'superseded_by': str(metadata.superseded_by) if metadata.superseded_by else None,
            'valid': valid,
            'issues': issues,
            'strong': strong,
            'strength_message': message,
        }

    def audit_directory(self, store, key_dir, warning_days: int = DEFAULT_WARNING_DAYS) -> Dict[str, Any]:
        """
        Audit every key in a directory

        Args:
            store: KeyStore used to enumerate and load keys
            key_dir: Key directory
            warning_days: Expiry warning window

        Returns:
            dict with per-key ``keys`` reports, summary counts and the
            store's ``consistency_issues``
        """
        reports = []
        for record in store.list(key_dir):
            try:
                key_pair = store.load(record.id, key_dir)
            except StorageError as e:
                reports.append({'id': str(record.id), 'valid': False, 'issues': [str(e)]})
                continue
            if key_pair is not None:
                reports.append(self.audit_key(key_pair, warning_days))

        return {
            'total_keys': len(reports),
            'valid': sum(1 for r in reports if r['valid']),
            'invalid': sum(1 for r in reports if not r['valid']),
            'expired': sum(1 for r in reports if r.get('expired')),
            'weak': sum(1 for r in reports if r.get('strong') is False),
            'quantum_resistant': sum(1 for r in reports if r.get('quantum_resistant')),
            'keys': reports,
            'consistency_issues': store.check_consistency(key_dir),
        }
