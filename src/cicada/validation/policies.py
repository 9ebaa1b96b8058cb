"""
Key strength policy

The verdicts here are a business policy, not a cryptographic measurement.
"""

from typing import NamedTuple

from ..crypto.types import KeyAlgorithm

WEAK_ALGORITHMS = frozenset({KeyAlgorithm.RSA2048})

STRONG_MESSAGE = "Strong algorithm"
CLASSICAL_MESSAGE = "Classical algorithm. Consider quantum-resistant alternatives for long-term security."
WEAK_MESSAGE = "Algorithm {name} is considered weak. Consider using RSA-4096 or Ed25519."


class StrengthVerdict(NamedTuple):
    strong: bool
    message: str


def strength_verdict(algorithm: KeyAlgorithm) -> StrengthVerdict:
    """Weak for RSA-2048, strong with a recommendation for other classical keys, strong for post-quantum"""
    if algorithm in WEAK_ALGORITHMS:
        return StrengthVerdict(False, WEAK_MESSAGE.format(name=algorithm.display_name))
    if not algorithm.quantum_resistant:
        return StrengthVerdict(True, CLASSICAL_MESSAGE)
    return StrengthVerdict(True, STRONG_MESSAGE)
