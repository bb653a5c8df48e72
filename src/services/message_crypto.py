"""AES-256-GCM encryption for chat messages.

The key for a conversation is derived from the two participant ids only:
    PBKDF2-HMAC-SHA256(password = sorted(id_a, id_b) joined, salt = app salt,
                       100,000 iterations) -> 32-byte key

Both parties, and a moderator who knows both ids, can therefore decrypt
without any key exchange or escrow. Confidentiality is against third
parties, not against the operator.

Ciphertext format: base64 AES-GCM output (ciphertext || 16-byte tag) and a
separate base64 96-bit nonce, matching the browser client's WebCrypto output.

decrypt_message() never raises: any failure yields DECRYPTION_SENTINEL so a
single bad message cannot abort rendering a conversation.
"""

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

APP_SALT = "ac-villager-trade-v1"
KDF_ITERATIONS = 100_000
DECRYPTION_SENTINEL = "[encrypted]"
_KEY_LENGTH = 32
_NONCE_LENGTH = 12


@dataclass(frozen=True)
class EncryptedMessage:
    """Base64 ciphertext and nonce as stored on a Message row."""

    ciphertext: str
    iv: str


def _app_salt() -> bytes:
    """Return the KDF salt, overridable via DREAMIE_CHAT_SALT."""
    salt = os.environ.get("DREAMIE_CHAT_SALT", "").strip() or APP_SALT
    return salt.encode("utf-8")


@lru_cache(maxsize=256)
def _derive_sorted(first: str, second: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(f"{first}{second}".encode("utf-8"))


def derive_key(id_a: str, id_b: str) -> bytes:
    """Derive the 32-byte conversation key for two participants.

    Order-independent: derive_key(a, b) == derive_key(b, a). Results are
    memoised per pair since PBKDF2 is deliberately slow and a conversation
    reload decrypts every message.

    Args:
        id_a: One participant id.
        id_b: The other participant id.

    Returns:
        32-byte AES-256 key.
    """
    first, second = sorted((id_a, id_b))
    return _derive_sorted(first, second, _app_salt())


def encrypt_message(plaintext: str, id_a: str, id_b: str) -> EncryptedMessage:
    """Encrypt chat text for the (id_a, id_b) conversation.

    Args:
        plaintext: Message text.
        id_a: One participant id.
        id_b: The other participant id.

    Returns:
        EncryptedMessage with base64 ciphertext and a fresh base64 nonce.
    """
    aesgcm = AESGCM(derive_key(id_a, id_b))
    nonce = os.urandom(_NONCE_LENGTH)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedMessage(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(nonce).decode("ascii"),
    )


def decrypt_message(ciphertext: str, iv: str, id_a: str, id_b: str) -> str:
    """Decrypt chat text, degrading to DECRYPTION_SENTINEL on any failure.

    Args:
        ciphertext: Base64 ciphertext from encrypt_message.
        iv: Base64 nonce from encrypt_message.
        id_a: One participant id.
        id_b: The other participant id.

    Returns:
        The plaintext, or "[encrypted]" if the key, nonce or ciphertext
        do not authenticate.
    """
    try:
        nonce = base64.b64decode(iv, validate=True)
        data = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError):
        logger.debug("Undecodable message envelope")
        return DECRYPTION_SENTINEL

    if len(nonce) != _NONCE_LENGTH:
        logger.debug("Invalid nonce length %d", len(nonce))
        return DECRYPTION_SENTINEL

    try:
        plaintext = AESGCM(derive_key(id_a, id_b)).decrypt(nonce, data, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError, ValueError):
        logger.debug("Message failed authentication for this key pair")
        return DECRYPTION_SENTINEL
