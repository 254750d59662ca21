"""
Descriptor encryption at rest.

Each descriptor is encrypted independently with AES-256-GCM. A master key is
derived once per cipher from the deployment secret with PBKDF2-HMAC-SHA256;
every descriptor then gets its own key from the master key with HKDF-SHA256
over a fresh random salt, so identical descriptors never produce identical
ciphertexts and decrypting a gallery never repeats the PBKDF2 work. The
descriptor length is bound into the ciphertext as associated data.

Serialized layout (EncryptedDescriptor.to_bytes):
    MAGIC (4) | VERSION (1) | SALT (16) | NONCE (12) | DIMENSION (4, big-endian) | CIPHERTEXT+TAG
"""

import hashlib
import logging
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from faceauth.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

_MAGIC = b"FADS"  # Face Auth Descriptor Store
_VERSION = 2
_SALT_LEN = 16
_NONCE_LEN = 12
_KEY_LEN = 32
_DIM_FORMAT = ">I"
_HEADER_LEN = len(_MAGIC) + 1 + _SALT_LEN + _NONCE_LEN + struct.calcsize(_DIM_FORMAT)
_HKDF_INFO = b"faceauth descriptor key"

DEFAULT_ITERATIONS = 100_000
DEFAULT_ENV_VAR = "FACEAUTH_DESCRIPTOR_KEY"
DEFAULT_KDF_SALT = "faceauth-descriptor-store"

# Descriptors are stored as little-endian float32
_DTYPE = np.dtype("<f4")


@dataclass(frozen=True)
class EncryptedDescriptor:
    """Opaque encrypted descriptor. Only the cipher looks inside."""

    ciphertext: bytes
    nonce: bytes
    salt: bytes
    dimension: int

    def to_bytes(self) -> bytes:
        return (
            _MAGIC
            + bytes([_VERSION])
            + self.salt
            + self.nonce
            + struct.pack(_DIM_FORMAT, self.dimension)
            + self.ciphertext
        )

    @classmethod
    def from_bytes(cls, blob: bytes) -> "EncryptedDescriptor":
        """
        Parse a serialized descriptor.

        Raises:
            DecryptionError: If the header is missing, truncated or of an
                             unsupported version.
        """
        if len(blob) < _HEADER_LEN or not blob.startswith(_MAGIC):
            raise DecryptionError("Not an encrypted descriptor (bad header)")

        version = blob[len(_MAGIC)]
        if version != _VERSION:
            raise DecryptionError(f"Unsupported descriptor format version {version}")

        offset = len(_MAGIC) + 1
        salt = blob[offset:offset + _SALT_LEN]
        offset += _SALT_LEN
        nonce = blob[offset:offset + _NONCE_LEN]
        offset += _NONCE_LEN
        (dimension,) = struct.unpack(_DIM_FORMAT, blob[offset:offset + struct.calcsize(_DIM_FORMAT)])
        offset += struct.calcsize(_DIM_FORMAT)

        return cls(ciphertext=blob[offset:], nonce=nonce, salt=salt, dimension=dimension)


class DescriptorCipher(ABC):
    """Symmetric encryption of descriptors. decrypt(encrypt(d)) == d."""

    @abstractmethod
    def encrypt(self, descriptor) -> EncryptedDescriptor:
        pass

    @abstractmethod
    def decrypt(self, encrypted: EncryptedDescriptor) -> np.ndarray:
        pass


def _key_fingerprint(secret: bytes) -> str:
    """Short, non-sensitive fingerprint for logging."""
    return hashlib.sha256(secret).hexdigest()[:8]


class AESGCMDescriptorCipher(DescriptorCipher):
    """
    AES-256-GCM descriptor cipher.

    The PBKDF2 master key is derived once, in the constructor. Per-descriptor
    keys come from HKDF over the descriptor's salt.

    Args:
        secret: Deployment secret (bytes or str).
        iterations: PBKDF2 iteration count.
        kdf_salt: Deployment-wide PBKDF2 salt. Changing it makes existing
                  descriptors unreadable.
    """

    def __init__(
        self,
        secret: Union[bytes, str],
        iterations: int = DEFAULT_ITERATIONS,
        kdf_salt: Union[bytes, str] = DEFAULT_KDF_SALT,
    ):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if isinstance(kdf_salt, str):
            kdf_salt = kdf_salt.encode("utf-8")
        if not secret:
            raise ConfigurationError("Descriptor encryption secret must not be empty")
        if not kdf_salt:
            raise ConfigurationError("PBKDF2 salt must not be empty")
        if iterations < 1:
            raise ConfigurationError(f"PBKDF2 iterations must be positive, got {iterations}")

        self.iterations = iterations
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=_KEY_LEN, salt=kdf_salt, iterations=iterations)
        self._master_key = kdf.derive(secret)

        logger.info(f"Descriptor cipher ready (fp={_key_fingerprint(secret)}, iterations={iterations})")

    @classmethod
    def from_env(
        cls,
        env_var: str = DEFAULT_ENV_VAR,
        iterations: int = DEFAULT_ITERATIONS,
        kdf_salt: Union[bytes, str] = DEFAULT_KDF_SALT,
    ) -> "AESGCMDescriptorCipher":
        """
        Build a cipher from a secret held in an environment variable.

        Raises:
            ConfigurationError: If the variable is missing or empty.
        """
        raw = os.getenv(env_var)
        if not raw:
            raise ConfigurationError(
                f"Encryption secret environment variable '{env_var}' is not set. "
                f"Generate one, e.g.: export {env_var}=\"$(openssl rand -hex 32)\""
            )
        return cls(raw.strip(), iterations=iterations, kdf_salt=kdf_salt)

    def _derive_key(self, salt: bytes) -> bytes:
        hkdf = HKDF(algorithm=hashes.SHA256(), length=_KEY_LEN, salt=salt, info=_HKDF_INFO)
        return hkdf.derive(self._master_key)

    @staticmethod
    def _aad(dimension: int) -> bytes:
        return _MAGIC + bytes([_VERSION]) + struct.pack(_DIM_FORMAT, dimension)

    def encrypt(self, descriptor) -> EncryptedDescriptor:
        """
        Encrypt a descriptor.

        Args:
            descriptor: 1-D array-like of floats (may be empty).

        Returns:
            EncryptedDescriptor.
        """
        values = np.asarray(descriptor, dtype=_DTYPE).ravel()
        salt = os.urandom(_SALT_LEN)
        nonce = os.urandom(_NONCE_LEN)

        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, values.tobytes(), self._aad(values.size))
        return EncryptedDescriptor(ciphertext=ciphertext, nonce=nonce, salt=salt, dimension=int(values.size))

    def decrypt(self, encrypted: EncryptedDescriptor) -> np.ndarray:
        """
        Decrypt a descriptor.

        Returns:
            float32 array of the original length.

        Raises:
            DecryptionError: Wrong secret, tampered data, or a length that
                             does not match the recorded dimension.
        """
        if len(encrypted.nonce) != _NONCE_LEN or len(encrypted.salt) != _SALT_LEN:
            raise DecryptionError("Malformed encrypted descriptor (nonce/salt length)")

        try:
            plaintext = AESGCM(self._derive_key(encrypted.salt)).decrypt(
                encrypted.nonce, encrypted.ciphertext, self._aad(encrypted.dimension)
            )
        except InvalidTag as e:
            raise DecryptionError("Descriptor authentication failed (wrong key or corrupted data)") from e

        if len(plaintext) != encrypted.dimension * _DTYPE.itemsize:
            raise DecryptionError(
                f"Decrypted length {len(plaintext)} does not match dimension {encrypted.dimension}"
            )

        return np.frombuffer(plaintext, dtype=_DTYPE).astype(np.float32)


def get_cipher(config: Optional[dict] = None) -> AESGCMDescriptorCipher:
    """
    Factory function for the descriptor cipher.

    Args:
        config: Optional crypto config dict (env_var, pbkdf2_iterations,
                kdf_salt). If None, loads the "crypto" section of config.yaml.

    Returns:
        AESGCMDescriptorCipher reading its secret from the environment.
    """
    if config is None:
        try:
            from faceauth.config import get_crypto_config
            config = get_crypto_config()
        except (FileNotFoundError, KeyError):
            config = {}

    return AESGCMDescriptorCipher.from_env(
        env_var=config.get("env_var", DEFAULT_ENV_VAR),
        iterations=int(config.get("pbkdf2_iterations", DEFAULT_ITERATIONS)),
        kdf_salt=config.get("kdf_salt", DEFAULT_KDF_SALT),
    )
