"""
Post-quantum placeholder key material

No post-quantum primitive is implemented here. Dilithium and Kyber keys are
represented by placeholder material with the same on-disk shape as the
classical keys: an OpenSSH-style public line and a PEM-style private block.
The private block carries a random seed and the public blob is a digest of
that seed, so fingerprinting and pairing checks behave like they do for real
keys.
"""

import base64
import hashlib
import logging
import re
import secrets
from typing import Tuple

from ..exceptions import KeyGenerationError
from .types import KeyAlgorithm, POST_QUANTUM_ALGORITHMS

logger = logging.getLogger(__name__)

SEED_LENGTH = 32
PLACEHOLDER_NOTICE = "PLACEHOLDER POST-QUANTUM KEY - NOT FOR PRODUCTION USE"

_BLOCK_RE = re.compile(
    rb"-----BEGIN (?P<label>[A-Z0-9]+) PRIVATE KEY-----\s*(?P<body>.*?)\s*-----END (?P=label) PRIVATE KEY-----",
    re.DOTALL,
)


def _label(algorithm: KeyAlgorithm) -> str:
    return algorithm.value.upper()


def _public_blob(algorithm: KeyAlgorithm, seed: bytes) -> bytes:
    return hashlib.sha512(algorithm.ssh_type.encode('ascii') + b"\x00" + seed).digest()


def _public_line(algorithm: KeyAlgorithm, seed: bytes) -> bytes:
    blob = base64.b64encode(_public_blob(algorithm, seed))
    return algorithm.ssh_type.encode('ascii') + b" " + blob


def is_placeholder_type(key_type: str) -> bool:
    return any(key_type == a.ssh_type for a in POST_QUANTUM_ALGORITHMS)


def generate_placeholder(algorithm: KeyAlgorithm, email: str, comment: str = "") -> Tuple[bytes, bytes]:
    """
    Generate placeholder post-quantum key material

    Args:
        algorithm: A post-quantum algorithm
        email: Owner email, appended to the public line
        comment: Optional comment, recorded in the private block

    Returns:
        Tuple of (public_key_bytes, private_key_bytes)

    Raises:
        KeyGenerationError: If the algorithm is not post-quantum
    """
    if algorithm not in POST_QUANTUM_ALGORITHMS:
        raise KeyGenerationError(
            f"{algorithm.display_name} is not a post-quantum algorithm",
            "NOT_POST_QUANTUM"
        )

    logger.warning(f"Generating placeholder {algorithm.display_name} key - not suitable for production use")

    seed = secrets.token_bytes(SEED_LENGTH)
    public_key = _public_line(algorithm, seed)
    if email:
        public_key += b" " + email.encode('utf-8')

    label = _label(algorithm)
    lines = [
        f"-----BEGIN {label} PRIVATE KEY-----",
        PLACEHOLDER_NOTICE,
        f"Comment: {comment}" if comment else "Comment:",
        f"Seed: {base64.b64encode(seed).decode('ascii')}",
        f"-----END {label} PRIVATE KEY-----",
        "",
    ]
    private_key = "\n".join(lines).encode('utf-8')
    return public_key, private_key


def derive_placeholder_public(private_key: bytes) -> bytes:
    """
    Derive the public line (without comment) from a placeholder private block

    Raises:
        KeyGenerationError: If the bytes are not a placeholder private key
    """
    match = _BLOCK_RE.search(private_key)
    if not match:
        raise KeyGenerationError("Not a placeholder post-quantum private key", "INVALID_PRIVATE_KEY")

    label = match.group('label').decode('ascii')
    algorithm = next((a for a in POST_QUANTUM_ALGORITHMS if _label(a) == label), None)
    if algorithm is None:
        raise KeyGenerationError(f"Unknown placeholder key label: {label}", "INVALID_PRIVATE_KEY")

    for line in match.group('body').splitlines():
        if line.startswith(b"Seed:"):
            try:
                seed = base64.b64decode(line.split(b":", 1)[1].strip(), validate=True)
            except ValueError as e:
                raise KeyGenerationError(f"Corrupt placeholder seed: {e}", "INVALID_PRIVATE_KEY") from e
            if len(seed) != SEED_LENGTH:
                raise KeyGenerationError("Placeholder seed has invalid length", "INVALID_PRIVATE_KEY")
            return _public_line(algorithm, seed)

    raise KeyGenerationError("Placeholder private key has no seed", "INVALID_PRIVATE_KEY")


def check_placeholder_public(key_type: str, blob: bytes) -> bool:
    """Whether a decoded public blob has the placeholder shape for ``key_type``"""
    return is_placeholder_type(key_type) and len(blob) == hashlib.sha512().digest_size


def pqc_info() -> dict:
    """Describe post-quantum support"""
    return {
        'available': False,
        'implementation': 'placeholder',
        'supported_algorithms': [a.display_name for a in sorted(POST_QUANTUM_ALGORITHMS, key=lambda a: a.value)],
        'note': 'Post-quantum keys are placeholders with the on-disk shape of real keys',
    }
