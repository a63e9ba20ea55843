"""Nostr key handling, NIP-44 encryption and NIP-59 gift wrapping."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
import time
from typing import Any, Tuple

import bech32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .types import EventKind

# Seals and wraps are backdated by a random amount up to this many seconds
TIMESTAMP_TWEAK_RANGE = 2 * 24 * 60 * 60


# ──────────────────────────────────────────────────────────────────────────────
# Keys
# ──────────────────────────────────────────────────────────────────────────────


def _bech32_to_bytes(value: str, hrp: str) -> bytes:
    decoded_hrp, data = bech32.bech32_decode(value)
    if decoded_hrp != hrp or data is None:
        raise ValueError(f"Invalid {hrp} string")
    raw = bech32.convertbits(data, 5, 8, False)
    if raw is None or len(raw) != 32:
        raise ValueError(f"Invalid {hrp} payload")
    return bytes(raw)


def _bytes_to_bech32(value: bytes, hrp: str) -> str:
    return bech32.bech32_encode(hrp, bech32.convertbits(value, 8, 5))


def generate_privkey() -> str:
    """Generate a new private key as 64-char hex."""
    return PrivateKey().secret.hex()


def decode_nsec(nsec: str) -> PrivateKey:
    """Parse a private key given as ``nsec1...`` or hex."""
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        return PrivateKey(_bech32_to_bytes(nsec, "nsec"))
    try:
        secret = bytes.fromhex(nsec)
    except ValueError as e:
        raise ValueError("Private key must be nsec1... or 64 hex chars") from e
    if len(secret) != 32:
        raise ValueError("Private key must be 32 bytes")
    return PrivateKey(secret)


def get_pubkey(privkey: PrivateKey) -> str:
    """x-only public key (hex) used as the Nostr identity."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def encode_npub(pubkey_hex: str) -> str:
    return _bytes_to_bech32(bytes.fromhex(pubkey_hex), "npub")


def normalize_pubkey(value: str) -> str:
    """Hex x-only public key from ``npub1...`` or hex input.

    Raises:
        ValueError: If the value is neither
    """
    value = (value or "").strip()
    if value.startswith("npub1"):
        return _bech32_to_bytes(value, "npub").hex()
    value = value.lower()
    if len(value) == 66 and value[:2] in ("02", "03"):
        value = value[2:]
    try:
        if len(bytes.fromhex(value)) == 32:
            return value
    except ValueError:
        pass
    raise ValueError(f"Invalid public key: {value!r}")


def _lift_x(pubkey_hex: str) -> PublicKey:
    raw = bytes.fromhex(pubkey_hex)
    if len(raw) == 32:
        raw = b"\x02" + raw
    return PublicKey(raw)


# ──────────────────────────────────────────────────────────────────────────────
# Events
# ──────────────────────────────────────────────────────────────────────────────


def compute_event_id(event: dict[str, Any]) -> str:
    """NIP-01 event id: sha256 of the canonical serialization."""
    serialized = json.dumps(
        [
            0,
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(event: dict[str, Any], privkey: PrivateKey) -> dict[str, Any]:
    """Fill in ``pubkey``, ``id`` and BIP-340 ``sig``."""
    signed = dict(event)
    signed["pubkey"] = get_pubkey(privkey)
    signed["id"] = compute_event_id(signed)
    signed["sig"] = privkey.sign_schnorr(bytes.fromhex(signed["id"])).hex()
    return signed


def verify_event(event: dict[str, Any]) -> bool:
    """Check an event's id and signature."""
    try:
        if compute_event_id(event) != event["id"]:
            return False
        return PublicKeyXOnly(bytes.fromhex(event["pubkey"])).verify(
            bytes.fromhex(event["sig"]), bytes.fromhex(event["id"])
        )
    except (KeyError, ValueError, TypeError):
        return False


def _random_past(now: int) -> int:
    return now - secrets.randbelow(TIMESTAMP_TWEAK_RANGE)


class NIP44Error(Exception):
    """Base exception for NIP-44 encryption errors."""


class GiftWrapError(NIP44Error):
    """Raised when an envelope cannot be opened or is inconsistent."""


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    # Constants
    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        """Calculate padded length according to NIP-44."""
        if unpadded_len <= 0:
            raise ValueError("Invalid unpadded length")

        if unpadded_len <= 32:
            return 32

        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8

        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        """Apply NIP-44 padding to plaintext."""
        unpadded_len = len(plaintext)
        if (
            unpadded_len < NIP44Encrypt.MIN_PLAINTEXT_SIZE
            or unpadded_len > NIP44Encrypt.MAX_PLAINTEXT_SIZE
        ):
            raise ValueError(f"Invalid plaintext length: {unpadded_len}")

        padded_len = NIP44Encrypt.calc_padded_len(unpadded_len)
        prefix = struct.pack(">H", unpadded_len)  # 2 bytes big-endian
        padding = bytes(padded_len - unpadded_len)

        return prefix + plaintext + padding

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        """Remove NIP-44 padding from plaintext."""
        if len(padded) < 2:
            raise ValueError("Invalid padded data")

        unpadded_len = struct.unpack(">H", padded[:2])[0]
        if unpadded_len == 0 or len(padded) < 2 + unpadded_len:
            raise ValueError("Invalid padding")

        expected_len = 2 + NIP44Encrypt.calc_padded_len(unpadded_len)
        if len(padded) != expected_len:
            raise ValueError("Invalid padded length")

        return padded[2 : 2 + unpadded_len]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """Calculate conversation key using ECDH and HKDF."""
        # ECDH - shared x coordinate only
        shared_point = _lift_x(pubkey_hex).multiply(privkey.secret)
        shared_x = shared_point.format(compressed=False)[1:33]

        # HKDF-Extract with salt "nip44-v2"
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> Tuple[bytes, bytes, bytes]:
        """Derive message keys from conversation key and nonce."""
        if len(conversation_key) != 32:
            raise ValueError("Invalid conversation key length")
        if len(nonce) != 32:
            raise ValueError("Invalid nonce length")

        hkdf_expand = HKDFExpand(
            algorithm=hashes.SHA256(), length=76, info=nonce, backend=default_backend()
        )
        expanded = hkdf_expand.derive(conversation_key)

        chacha_key = expanded[0:32]
        chacha_nonce = expanded[32:44]
        hmac_key = expanded[44:76]

        return chacha_key, chacha_nonce, hmac_key

    @staticmethod
    def hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        """Calculate HMAC with additional authenticated data."""
        if len(aad) != 32:
            raise ValueError("AAD must be 32 bytes")

        return hmac.new(key, aad + message, hashlib.sha256).digest()

    @staticmethod
    def chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        """Apply the ChaCha20 keystream (encryption and decryption are the same)."""
        # cryptography wants a 16-byte nonce: 4-byte counter + 12-byte nonce
        cipher = Cipher(
            algorithms.ChaCha20(key, b"\x00" * 4 + nonce),
            mode=None,
            backend=default_backend(),
        )
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def encrypt(
        plaintext: str,
        sender_privkey: PrivateKey,
        recipient_pubkey: str,
        *,
        nonce: bytes | None = None,
    ) -> str:
        """Encrypt a message using NIP-44 v2.

        Args:
            plaintext: Message to encrypt
            sender_privkey: Sender's private key
            recipient_pubkey: Recipient's public key (hex)
            nonce: Fixed 32-byte nonce, for test vectors only

        Returns:
            Base64 encoded encrypted payload
        """
        nonce = nonce or secrets.token_bytes(32)

        conversation_key = NIP44Encrypt.get_conversation_key(
            sender_privkey, recipient_pubkey
        )
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )

        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)

        # version(1) + nonce(32) + ciphertext + mac(32)
        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt(
        ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str
    ) -> str:
        """Decrypt a message using NIP-44 v2.

        Args:
            ciphertext: Base64 encoded encrypted payload
            recipient_privkey: Recipient's private key
            sender_pubkey: Sender's public key (hex)

        Returns:
            Decrypted plaintext message
        """
        if ciphertext.startswith("#"):
            raise NIP44Error("Unsupported encryption version")

        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e

        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")

        version = payload[0]
        if version != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {version}")

        nonce = payload[1:33]
        mac = payload[-32:]
        encrypted_data = payload[33:-32]

        try:
            conversation_key = NIP44Encrypt.get_conversation_key(
                recipient_privkey, sender_pubkey
            )
        except ValueError as e:
            raise NIP44Error(f"Invalid sender key: {e}") from e
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )

        calculated_mac = NIP44Encrypt.hmac_aad(hmac_key, encrypted_data, nonce)
        if not hmac.compare_digest(calculated_mac, mac):
            raise NIP44Error("Invalid MAC")

        padded_plaintext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, encrypted_data)

        try:
            return NIP44Encrypt.unpad(padded_plaintext).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise NIP44Error(str(e)) from e


def nip44_encrypt(plaintext: str, sender_privkey: PrivateKey, recipient_pubkey: str) -> str:
    return NIP44Encrypt.encrypt(plaintext, sender_privkey, recipient_pubkey)


def nip44_decrypt(ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str) -> str:
    return NIP44Encrypt.decrypt(ciphertext, recipient_privkey, sender_pubkey)


# ──────────────────────────────────────────────────────────────────────────────
# NIP-59 gift wrap
# ──────────────────────────────────────────────────────────────────────────────


def create_rumor(
    privkey: PrivateKey,
    content: str,
    tags: list[list[str]],
    *,
    kind: int = EventKind.PrivateDirectMessage,
    created_at: int | None = None,
) -> dict[str, Any]:
    """Unsigned inner event. It has an id but deliberately no signature."""
    rumor: dict[str, Any] = {
        "pubkey": get_pubkey(privkey),
        "created_at": created_at or int(time.time()),
        "kind": kind,
        "tags": tags,
        "content": content,
    }
    rumor["id"] = compute_event_id(rumor)
    return rumor


def wrap_event(
    rumor: dict[str, Any], sender_privkey: PrivateKey, recipient_pubkey: str
) -> dict[str, Any]:
    """Seal ``rumor`` for ``recipient_pubkey`` and wrap it with a one-time key.

    Returns:
        A signed kind-1059 event addressed (``p`` tag) to the recipient
    """
    now = int(time.time())
    seal = sign_event(
        {
            "created_at": _random_past(now),
            "kind": EventKind.Seal,
            "tags": [],
            "content": nip44_encrypt(json.dumps(rumor), sender_privkey, recipient_pubkey),
        },
        sender_privkey,
    )

    ephemeral = PrivateKey()
    return sign_event(
        {
            "created_at": _random_past(now),
            "kind": EventKind.GiftWrap,
            "tags": [["p", recipient_pubkey]],
            "content": nip44_encrypt(json.dumps(seal), ephemeral, recipient_pubkey),
        },
        ephemeral,
    )


def unwrap_event(wrap: dict[str, Any], recipient_privkey: PrivateKey) -> dict[str, Any]:
    """Open a gift wrap and return the inner rumor.

    Raises:
        GiftWrapError: Undecryptable or malformed layers, or a seal whose
            author differs from the rumor's claimed author
    """
    try:
        seal = json.loads(nip44_decrypt(wrap["content"], recipient_privkey, wrap["pubkey"]))
        if not isinstance(seal, dict) or seal.get("kind") != EventKind.Seal:
            raise GiftWrapError("Not a seal")
        if not verify_event(seal):
            raise GiftWrapError("Invalid seal signature")
        rumor = json.loads(nip44_decrypt(seal["content"], recipient_privkey, seal["pubkey"]))
    except GiftWrapError:
        raise
    except (NIP44Error, KeyError, TypeError, ValueError) as e:
        raise GiftWrapError(f"Malformed envelope: {e}") from e

    if not isinstance(rumor, dict):
        raise GiftWrapError("Malformed rumor")
    if rumor.get("pubkey") != seal["pubkey"]:
        raise GiftWrapError("Seal author does not match rumor author")
    return rumor
