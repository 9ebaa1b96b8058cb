"""
``ssh-keygen`` backed key material provider

Runs every key operation in a separate ``ssh-keygen`` process so private key
material never has to be parsed inside this interpreter. Key bytes are handed
to the tool through files in a private temporary directory that is removed
after each call.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from typing import List, Optional, Tuple

from ..exceptions import KeyGenerationError
from . import postquantum
from .provider import (
    KeyMaterialProvider,
    UNKNOWN_FINGERPRINT,
    register_provider,
    sha256_fingerprint,
    split_public_line,
)
from .types import KeyAlgorithm, POST_QUANTUM_ALGORITHMS

logger = logging.getLogger(__name__)

SSH_KEYGEN = "ssh-keygen"
DEFAULT_TIMEOUT = 60

_KEYGEN_ARGS = {
    KeyAlgorithm.ED25519: ["-t", "ed25519"],
    KeyAlgorithm.RSA2048: ["-t", "rsa", "-b", "2048"],
    KeyAlgorithm.RSA4096: ["-t", "rsa", "-b", "4096"],
    KeyAlgorithm.ECDSA_P256: ["-t", "ecdsa", "-b", "256"],
    KeyAlgorithm.ECDSA_P384: ["-t", "ecdsa", "-b", "384"],
}


def parse_fingerprint_output(output: str) -> str:
    """
    Extract the fingerprint from ``ssh-keygen -l`` output

    The line has the form ``<bits> <fingerprint> <comment> (<type>)``; the
    fingerprint is the second whitespace-delimited token.
    """
    lines = output.strip().splitlines()
    if not lines:
        return UNKNOWN_FINGERPRINT
    parts = lines[0].split()
    if len(parts) >= 2:
        return parts[1]
    return UNKNOWN_FINGERPRINT


class OpenSSHKeygenProvider(KeyMaterialProvider):
    """Provider that shells out to ``ssh-keygen``"""

    name = "ssh-keygen"

    def __init__(self, executable: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self.executable = executable or SSH_KEYGEN
        self.timeout = timeout

    def _run(self, args: List[str]) -> subprocess.CompletedProcess:
        command = [self.executable] + args
        logger.debug(f"Running {' '.join(command)}")
        return subprocess.run(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=self.timeout,
            check=False,
        )

    def _write_temp(self, directory: str, name: str, data: bytes, mode: int = 0o600) -> str:
        path = os.path.join(directory, name)
        with open(path, 'wb') as f:
            f.write(data)
        os.chmod(path, mode)
        return path

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def generate(self, algorithm: KeyAlgorithm, email: str, comment: str = "") -> Tuple[bytes, bytes]:
        algorithm = KeyAlgorithm.parse(algorithm)
        if algorithm in POST_QUANTUM_ALGORITHMS:
            return postquantum.generate_placeholder(algorithm, email, comment)

        args = _KEYGEN_ARGS.get(algorithm)
        if args is None:
            raise KeyGenerationError(
                f"Unsupported algorithm for ssh-keygen: {algorithm.display_name}",
                "UNSUPPORTED_ALGORITHM"
            )

        temp_dir = tempfile.mkdtemp(prefix="cicada-keygen-")
        try:
            key_path = os.path.join(temp_dir, "id_key")
            try:
                result = self._run(args + ["-C", email, "-N", "", "-q", "-f", key_path])
            except (OSError, subprocess.SubprocessError) as e:
                raise KeyGenerationError(f"Failed to run ssh-keygen: {e}", "KEYGEN_UNAVAILABLE") from e

            if result.returncode != 0:
                raise KeyGenerationError(
                    f"ssh-keygen failed to generate {algorithm.display_name} key: "
                    f"{result.stderr.decode('utf-8', 'replace').strip()}",
                    "GENERATION_FAILED"
                )

            with open(key_path, 'rb') as f:
                private_key = f.read()
            with open(key_path + ".pub", 'rb') as f:
                public_key = f.read().strip()
            return public_key, private_key
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def fingerprint(self, public_key: bytes) -> str:
        temp_dir = tempfile.mkdtemp(prefix="cicada-fp-")
        try:
            path = self._write_temp(temp_dir, "key.pub", public_key, 0o644)
            try:
                result = self._run(["-l", "-f", path])
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"Failed to compute fingerprint: {e}")
                return UNKNOWN_FINGERPRINT
            if result.returncode != 0:
                return self._placeholder_fingerprint(public_key)
            return parse_fingerprint_output(result.stdout.decode('utf-8', 'replace'))
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _placeholder_fingerprint(self, public_key: bytes) -> str:
        # ssh-keygen does not know the post-quantum placeholder types
        try:
            key_type, blob, _ = split_public_line(public_key)
        except (ValueError, UnicodeDecodeError):
            return UNKNOWN_FINGERPRINT
        if postquantum.is_placeholder_type(key_type):
            return sha256_fingerprint(blob)
        return UNKNOWN_FINGERPRINT

    def derive_public_key(self, private_key: bytes) -> bytes:
        if postquantum.PLACEHOLDER_NOTICE.encode() in private_key:
            return postquantum.derive_placeholder_public(private_key)

        temp_dir = tempfile.mkdtemp(prefix="cicada-derive-")
        try:
            path = self._write_temp(temp_dir, "key", private_key)
            try:
                result = self._run(["-y", "-f", path])
            except (OSError, subprocess.SubprocessError) as e:
                raise KeyGenerationError(f"Failed to run ssh-keygen: {e}", "KEYGEN_UNAVAILABLE") from e
            if result.returncode != 0:
                raise KeyGenerationError(
                    f"ssh-keygen could not read private key: {result.stderr.decode('utf-8', 'replace').strip()}",
                    "DERIVATION_FAILED"
                )
            return result.stdout.strip()
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def check_public_key(self, public_key: bytes) -> bool:
        try:
            key_type, blob, _ = split_public_line(public_key)
        except (ValueError, UnicodeDecodeError):
            return False
        if postquantum.is_placeholder_type(key_type):
            return postquantum.check_placeholder_public(key_type, blob)

        temp_dir = tempfile.mkdtemp(prefix="cicada-check-")
        try:
            path = self._write_temp(temp_dir, "key.pub", public_key, 0o644)
            try:
                result = self._run(["-l", "-f", path])
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"Public key validation failed: {e}")
                return False
            return result.returncode == 0
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)


register_provider(OpenSSHKeygenProvider.name, OpenSSHKeygenProvider)
