"""
Key pair generation for CIcaDA

Builds ``KeyMetadata`` for a new identity and asks a ``KeyMaterialProvider``
for the matching key material.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from ..exceptions import KeyGenerationError
from ..logging_utils import AuditSink, NullAuditSink
from .provider import KeyMaterialProvider, get_default_provider
from .types import KeyAlgorithm, KeyMetadata, KeyPair, KeyPurpose

logger = logging.getLogger(__name__)

HYBRID_CLASSICAL_ALGORITHM = KeyAlgorithm.ED25519
HYBRID_PQC_ALGORITHM = KeyAlgorithm.DILITHIUM3


def default_purpose(algorithm: KeyAlgorithm) -> KeyPurpose:
    """Kyber is a KEM and defaults to encryption, everything else to SSH authentication"""
    if algorithm in (KeyAlgorithm.KYBER512, KeyAlgorithm.KYBER768, KeyAlgorithm.KYBER1024):
        return KeyPurpose.ENCRYPTION
    return KeyPurpose.SSH_AUTH


def generate_key_pair(algorithm,
                      email: str,
                      comment: str = "",
                      expires_at: Optional[datetime] = None,
                      purpose: Optional[KeyPurpose] = None,
                      provider: Optional[KeyMaterialProvider] = None,
                      audit_sink: Optional[AuditSink] = None) -> KeyPair:
    """
    Generate a key pair with fresh metadata

    Args:
        algorithm: KeyAlgorithm or algorithm name
        email: Owner email address
        comment: Free-text comment
        expires_at: Optional expiry time
        purpose: Key purpose (derived from the algorithm if None)
        provider: Key material provider (in-process provider if None)
        audit_sink: Receives the GENERATE event

    Returns:
        KeyPair: The generated key pair; fingerprint is computed when stored

    Raises:
        KeyGenerationError: If the provider fails
    """
    algorithm = KeyAlgorithm.parse(algorithm)
    provider = provider or get_default_provider()
    audit_sink = audit_sink or NullAuditSink()

    metadata = KeyMetadata(
        algorithm=algorithm,
        purpose=purpose or default_purpose(algorithm),
        email=email,
        comment=comment or "",
        expires_at=expires_at,
    )

    logger.info(f"Creating {algorithm.display_name} key pair for {email}")
    try:
        public_key, private_key = provider.generate(algorithm, email, comment or "")
    except KeyGenerationError:
        raise
    except Exception as e:
        raise KeyGenerationError(
            f"Failed to generate {algorithm.display_name} key: {e}",
            "GENERATION_FAILED"
        ) from e

    audit_sink.key_operation("GENERATE", f"{algorithm.display_name} key generated: {metadata.id}")
    return KeyPair(metadata=metadata, public_key=public_key, private_key=private_key)


def generate_hybrid_key_pairs(email: str,
                              comment: str = "",
                              expires_at: Optional[datetime] = None,
                              provider: Optional[KeyMaterialProvider] = None,
                              audit_sink: Optional[AuditSink] = None) -> Tuple[KeyPair, KeyPair]:
    """
    Generate a classical + quantum-resistant key set for one identity

    Returns:
        Tuple of (Ed25519 key pair, Dilithium3 key pair), both with the
        HYBRID_QR purpose
    """
    suffix = f"{comment} " if comment else ""
    classical = generate_key_pair(
        HYBRID_CLASSICAL_ALGORITHM, email, f"{suffix}(classical)", expires_at,
        KeyPurpose.HYBRID_QR, provider, audit_sink
    )
    pqc = generate_key_pair(
        HYBRID_PQC_ALGORITHM, email, f"{suffix}(PQC)", expires_at,
        KeyPurpose.HYBRID_QR, provider, audit_sink
    )
    return classical, pqc
