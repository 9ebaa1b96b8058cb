"""
Key material providers for CIcaDA

A ``KeyMaterialProvider`` is the only component that touches key encodings.
It synthesizes key pairs, fingerprints public keys, derives public keys from
private keys and checks whether public key bytes parse. The lifecycle
components (store, backup, rotation, validation) depend on this interface
only, so the in-process implementation below and the ``ssh-keygen``
implementation in ``openssh.py`` are interchangeable.
"""

import base64
import binascii
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from ..exceptions import ConfigurationError, KeyGenerationError
from . import postquantum
from .types import KeyAlgorithm, POST_QUANTUM_ALGORITHMS

logger = logging.getLogger(__name__)

RSA_PUBLIC_EXPONENT = 65537
UNKNOWN_FINGERPRINT = "unknown"


def split_public_line(public_key: bytes) -> Tuple[str, bytes, str]:
    """
    Split an OpenSSH public key line into (type, blob, comment)

    Raises:
        ValueError: If the line has fewer than two tokens or the blob is not base64
    """
    parts = public_key.decode('utf-8').strip().split(None, 2)
    if len(parts) < 2:
        raise ValueError("Public key line must contain a key type and a base64 blob")
    blob = base64.b64decode(parts[1], validate=True)
    comment = parts[2] if len(parts) > 2 else ""
    return parts[0], blob, comment


def sha256_fingerprint(blob: bytes) -> str:
    """Fingerprint in the ``SHA256:<unpadded base64>`` form used by OpenSSH"""
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode('ascii').rstrip("=")


class KeyMaterialProvider(ABC):
    """Capability interface for key synthesis and key encoding checks"""

    name = "abstract"

    @abstractmethod
    def generate(self, algorithm: KeyAlgorithm, email: str, comment: str = "") -> Tuple[bytes, bytes]:
        """
        Generate a key pair

        Args:
            algorithm: Requested algorithm
            email: Owner email, used as the public key comment
            comment: Optional free-text comment

        Returns:
            Tuple of (public_key_bytes, private_key_bytes)

        Raises:
            KeyGenerationError: If generation fails
        """

    @abstractmethod
    def fingerprint(self, public_key: bytes) -> str:
        """Fingerprint of a public key line; ``"unknown"`` if it cannot be read"""

    @abstractmethod
    def derive_public_key(self, private_key: bytes) -> bytes:
        """
        Derive the public key line (``<type> <base64>``) from private key bytes

        Raises:
            KeyGenerationError: If the private key cannot be parsed
        """

    @abstractmethod
    def check_public_key(self, public_key: bytes) -> bool:
        """Whether the bytes parse as a public key of their claimed type"""


class CryptographyKeyProvider(KeyMaterialProvider):
    """In-process provider built on the ``cryptography`` package"""

    name = "cryptography"

    def _generate_private(self, algorithm: KeyAlgorithm):
        if algorithm == KeyAlgorithm.ED25519:
            return ed25519.Ed25519PrivateKey.generate()
        if algorithm in (KeyAlgorithm.RSA2048, KeyAlgorithm.RSA4096):
            return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=algorithm.key_size)
        if algorithm == KeyAlgorithm.ECDSA_P256:
            return ec.generate_private_key(ec.SECP256R1())
        if algorithm == KeyAlgorithm.ECDSA_P384:
            return ec.generate_private_key(ec.SECP384R1())
        raise KeyGenerationError(
            f"Unsupported algorithm for classical key generation: {algorithm.display_name}",
            "UNSUPPORTED_ALGORITHM"
        )

    def generate(self, algorithm: KeyAlgorithm, email: str, comment: str = "") -> Tuple[bytes, bytes]:
        algorithm = KeyAlgorithm.parse(algorithm)
        if algorithm in POST_QUANTUM_ALGORITHMS:
            return postquantum.generate_placeholder(algorithm, email, comment)

        try:
            private_key_obj = self._generate_private(algorithm)
            private_key = private_key_obj.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.OpenSSH,
                encryption_algorithm=serialization.NoEncryption(),
            )
            public_key = private_key_obj.public_key().public_bytes(
                encoding=serialization.Encoding.OpenSSH,
                format=serialization.PublicFormat.OpenSSH,
            )
        except KeyGenerationError:
            raise
        except Exception as e:
            raise KeyGenerationError(
                f"Failed to generate {algorithm.display_name} key: {e}",
                "GENERATION_FAILED"
            ) from e

        if email:
            public_key += b" " + email.encode('utf-8')
        return public_key, private_key

    def fingerprint(self, public_key: bytes) -> str:
        try:
            key_type, blob, _ = split_public_line(public_key)
        except (ValueError, UnicodeDecodeError, binascii.Error):
            return UNKNOWN_FINGERPRINT
        if not blob:
            return UNKNOWN_FINGERPRINT
        return sha256_fingerprint(blob)

    def derive_public_key(self, private_key: bytes) -> bytes:
        if b"OPENSSH PRIVATE KEY" not in private_key and postquantum.PLACEHOLDER_NOTICE.encode() in private_key:
            return postquantum.derive_placeholder_public(private_key)
        try:
            private_key_obj = serialization.load_ssh_private_key(private_key, password=None)
            return private_key_obj.public_key().public_bytes(
                encoding=serialization.Encoding.OpenSSH,
                format=serialization.PublicFormat.OpenSSH,
            )
        except Exception as e:
            raise KeyGenerationError(f"Failed to derive public key: {e}", "DERIVATION_FAILED") from e

    def check_public_key(self, public_key: bytes) -> bool:
        try:
            key_type, blob, _ = split_public_line(public_key)
        except (ValueError, UnicodeDecodeError, binascii.Error):
            return False

        if postquantum.is_placeholder_type(key_type):
            return postquantum.check_placeholder_public(key_type, blob)

        line = key_type.encode('ascii') + b" " + base64.b64encode(blob)
        try:
            serialization.load_ssh_public_key(line)
        except (ValueError, TypeError) as e:
            logger.debug(f"Public key does not parse: {e}")
            return False
        return True


_PROVIDERS = {
    'cryptography': CryptographyKeyProvider,
}


def register_provider(name: str, factory) -> None:
    """Register a provider factory under a configuration name"""
    _PROVIDERS[name] = factory


def get_key_provider(name: Optional[str] = None) -> KeyMaterialProvider:
    """
    Build a key material provider by configuration name

    Args:
        name: ``"cryptography"`` (default) or ``"ssh-keygen"``

    Raises:
        ConfigurationError: If no provider is registered under the name
    """
    if name in (None, ""):
        name = 'cryptography'
    if name not in _PROVIDERS:
        # ssh-keygen provider registers itself on import
        from . import openssh  # noqa: F401
    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown key provider '{name}' (available: {', '.join(sorted(_PROVIDERS))})",
            "UNKNOWN_PROVIDER"
        )
    return factory()


def get_default_provider() -> KeyMaterialProvider:
    """Get the default in-process provider"""
    return CryptographyKeyProvider()
