"""Encrypt-on-arrival using NaCl box (X25519 + XSalsa20-Poly1305).

The server holds one keypair per process. Clients always receive the current
server public key next to each ciphertext, so a restart (new keypair) never
strands anything: no ciphertext is stored server-side.
"""

from __future__ import annotations

import base64
import binascii
import threading
from dataclasses import asdict, dataclass
from typing import Optional

import nacl.utils
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey

from .errors import EncryptionError

ALGORITHM = "x25519-xsalsa20-poly1305"
PUBLIC_KEY_SIZE = PublicKey.SIZE
NONCE_SIZE = Box.NONCE_SIZE


@dataclass(slots=True, frozen=True)
class EncryptedPayload:
    ciphertext: str
    nonce: str
    server_public_key: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class ServerKeyring:
    """Process-scoped server keypair with an initialise-once accessor.

    Pass a ``PrivateKey`` to pin the keypair (tests, or a key loaded from a
    secret store); otherwise one is generated on first use.
    """

    def __init__(self, private_key: Optional[PrivateKey] = None) -> None:
        self._private_key = private_key
        self._lock = threading.Lock()

    def keypair(self) -> PrivateKey:
        if self._private_key is None:
            with self._lock:
                if self._private_key is None:
                    self._private_key = PrivateKey.generate()
        return self._private_key

    @property
    def public_key_b64(self) -> str:
        return _b64(bytes(self.keypair().public_key))


_SERVER_KEYRING = ServerKeyring()


def get_server_keyring() -> ServerKeyring:
    return _SERVER_KEYRING


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _decode_b64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def _decode_public_key(value: str) -> PublicKey:
    try:
        raw = _decode_b64(value)
    except (binascii.Error, ValueError, UnicodeEncodeError, AttributeError) as exc:
        raise EncryptionError("Public key is not valid base64") from exc
    if len(raw) != PUBLIC_KEY_SIZE:
        raise EncryptionError(
            f"Public key must decode to {PUBLIC_KEY_SIZE} bytes",
            data={"length": len(raw)},
        )
    return PublicKey(raw)


def validate_public_key(key: Optional[str]) -> bool:
    """True iff ``key`` is base64 for exactly 32 bytes."""
    if not key:
        return False
    try:
        _decode_public_key(key)
    except EncryptionError:
        return False
    return True


def encrypt_for(plaintext: str, recipient_public_key_b64: str, keyring: ServerKeyring) -> EncryptedPayload:
    """Encrypt ``plaintext`` so only the holder of the recipient secret key can read it."""
    recipient = _decode_public_key(recipient_public_key_b64)
    server_key = keyring.keypair()
    # Fresh nonce on every call; reuse under the same key pair breaks confidentiality.
    nonce = nacl.utils.random(NONCE_SIZE)
    encrypted = Box(server_key, recipient).encrypt(plaintext.encode("utf-8"), nonce)
    return EncryptedPayload(
        ciphertext=_b64(encrypted.ciphertext),
        nonce=_b64(nonce),
        server_public_key=_b64(bytes(server_key.public_key)),
    )


def encrypt_for_agent(plaintext: str, recipient_public_key_b64: str) -> EncryptedPayload:
    """Encrypt with the process keyring."""
    return encrypt_for(plaintext, recipient_public_key_b64, get_server_keyring())


def decrypt(payload: EncryptedPayload, recipient_secret_key_b64: str) -> str:
    """Open a payload with the recipient secret key.

    Raises ``EncryptionError`` when the key is wrong or the ciphertext was
    tampered with.
    """
    try:
        secret = PrivateKey(_decode_b64(recipient_secret_key_b64))
        sender = PublicKey(_decode_b64(payload.server_public_key))
        opened = Box(secret, sender).decrypt(_decode_b64(payload.ciphertext), _decode_b64(payload.nonce))
    except CryptoError as exc:
        raise EncryptionError("Decryption failed - invalid key or corrupted data") from exc
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError("Malformed encrypted payload") from exc
    return opened.decode("utf-8")


def generate_keypair() -> dict[str, str]:
    """Fresh client keypair. The secret key is handed out once and never stored."""
    private_key = PrivateKey.generate()
    return {
        "public_key": _b64(bytes(private_key.public_key)),
        "secret_key": _b64(bytes(private_key)),
        "algorithm": ALGORITHM,
    }
