"""Encryption at rest for migration secrets, and rotation key generation.

Secrets are sealed with Fernet symmetric encryption. The key comes from
settings; a process without a configured key gets an ephemeral one, which
makes every stored secret unreadable after restart (acceptable for tests and
local runs only, and logged as a warning).
"""

from dataclasses import dataclass

import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .exceptions import ConfigurationError

logger = structlog.get_logger()

# multicodec prefix for secp256k1-pub, followed by the compressed point
_SECP256K1_MULTICODEC = b"\xe7\x01"
_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


class SecretBox:
    """Fernet wrapper used by Migration to seal and open secret fields."""

    def __init__(self, key: str | bytes | None = None):
        if key is None:
            logger.warning("No encryption key configured, using an ephemeral key")
            key = Fernet.generate_key()
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid encryption key: {e}") from e

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str | None:
        """Open a sealed value; returns None when it was sealed with another key."""
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken:
            logger.error("Secret could not be decrypted with the configured key")
            return None


@dataclass(frozen=True)
class RotationKey:
    """A PLC rotation key pair."""

    private_key_hex: str
    did_key: str


def generate_rotation_key() -> RotationKey:
    """Generate a secp256k1 key pair suitable for a PLC rotationKeys entry."""
    private_key = ec.generate_private_key(ec.SECP256K1())
    private_value = private_key.private_numbers().private_value
    compressed = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    return RotationKey(
        private_key_hex=private_value.to_bytes(32, "big").hex(),
        did_key="did:key:z" + _base58btc(_SECP256K1_MULTICODEC + compressed),
    )


def _base58btc(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    encoded = ""
    while number:
        number, remainder = divmod(number, 58)
        encoded = _BASE58_ALPHABET[remainder] + encoded
    leading_zeros = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading_zeros + encoded
