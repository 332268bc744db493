"""
crypto.py — tiny AES-256-GCM helpers plus key wrapping.

Why this exists:
- Keep all symmetric crypto in one place so the rest of the code can call
  `encrypt/decrypt` on strings without worrying about IVs and tags.
- Standard Base64 (with padding) so exported keys and ciphertexts are
  interchangeable with browser clients using Web Crypto + btoa/atob.
- Enforce 256-bit keys everywhere so we don't end up mixing key sizes.

Wire format:
- encrypt():   base64( IV[12] || ciphertext || tag[16] )
- password:    base64( salt[16] || IV[12] || wrapped key || tag[16] )
- publicKey:   base64( ephemeral X25519 pub[32] || IV[12] || wrapped key || tag[16] )

Notes:
- A fresh random IV is drawn for every single encryption. Never cache or
  replay a returned ciphertext as a nonce source.
- Every failure on the way *in* (bad base64, short blob, tag mismatch)
  becomes a DecryptionError; we never hand back unauthenticated bytes.
"""

import base64
import binascii
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, EncryptionError, KeyFormatError

KEY_SIZE = 32           # AES-256
IV_SIZE = 12            # 96-bit GCM nonce
TAG_SIZE = 16           # 128-bit auth tag
SALT_SIZE = 16
PBKDF2_ITERATIONS = 100_000
PUBLIC_KEY_SIZE = 32    # raw X25519
WRAP_INFO = b"parley-key-wrap-v1"

# -----------------------------
# Base64 helpers (standard, padded)
# -----------------------------

def b64_encode(data: bytes) -> str:
    """Standard Base64 with '=' padding, as btoa() would produce."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(data: str) -> bytes:
    """Strict decode; raises binascii.Error / ValueError on junk input."""
    return base64.b64decode(data.encode("ascii"), validate=True)


# -------------
# Symmetric key utils
# -------------

def enforce_key_size(key: bytes) -> None:
    """Only raw 256-bit keys are accepted."""
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise KeyFormatError("Key must be 32 raw bytes (AES-256).")


def generate_key() -> bytes:
    """Fresh random 256-bit AES-GCM key."""
    return AESGCM.generate_key(bit_length=256)


def export_key(key: bytes) -> str:
    """Raw key bytes -> Base64. Deterministic for a given key."""
    enforce_key_size(key)
    return b64_encode(bytes(key))


def import_key(data: str) -> bytes:
    """Inverse of export_key(). KeyFormatError on anything malformed."""
    if not isinstance(data, str):
        raise KeyFormatError("Exported key must be a string.")
    try:
        raw = b64_decode(data)
    except (binascii.Error, ValueError) as exc:
        raise KeyFormatError(f"Key is not valid base64: {exc}") from exc
    if len(raw) != KEY_SIZE:
        raise KeyFormatError(f"Key must decode to {KEY_SIZE} bytes, got {len(raw)}.")
    return raw


# ---------------------------
# Encryption & Decryption API
# ---------------------------

def encrypt_bytes(data: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """
    AES-GCM encrypt and return IV || ciphertext || tag.
    Used directly for files/media blobs; text goes through encrypt().
    """
    try:
        enforce_key_size(key)
    except KeyFormatError as exc:
        raise EncryptionError(str(exc)) from exc
    iv = os.urandom(IV_SIZE)
    return iv + AESGCM(bytes(key)).encrypt(iv, data, aad)


def decrypt_bytes(blob: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """Reverse of encrypt_bytes(). DecryptionError on any failure."""
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise DecryptionError("Failed to decrypt message")
    if len(blob) < IV_SIZE + TAG_SIZE:
        raise DecryptionError("Failed to decrypt message")
    iv, body = blob[:IV_SIZE], blob[IV_SIZE:]
    try:
        return AESGCM(bytes(key)).decrypt(iv, body, aad)
    except InvalidTag as exc:
        # wrong key and tampered data raise the same error
        raise DecryptionError("Failed to decrypt message") from exc


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt UTF-8 text; returns base64(IV || ciphertext || tag)."""
    try:
        data = plaintext.encode("utf-8")
    except (UnicodeEncodeError, AttributeError) as exc:
        # lone surrogates (or not text at all) have no UTF-8 form
        raise EncryptionError("Text cannot be encoded as UTF-8") from exc
    return b64_encode(encrypt_bytes(data, key))


def decrypt(ciphertext_b64: str, key: bytes) -> str:
    """Decrypt what encrypt() produced. DecryptionError on any failure."""
    try:
        blob = b64_decode(ciphertext_b64)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise DecryptionError("Failed to decrypt message") from exc
    plain = decrypt_bytes(blob, key)
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Failed to decrypt message") from exc


# -------------------------------------------------
# Password wrapping (encryptionMethod = "password")
# -------------------------------------------------

def derive_key_from_password(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256 -> 256-bit wrapping key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def wrap_key_with_password(key: bytes, password: str) -> str:
    """Wrap a conversation key under a password-derived key."""
    enforce_key_size(key)
    salt = os.urandom(SALT_SIZE)
    wrapping = derive_key_from_password(password, salt)
    return b64_encode(salt + encrypt_bytes(bytes(key), wrapping))


def unwrap_key_with_password(blob_b64: str, password: str) -> bytes:
    """Inverse of wrap_key_with_password(); DecryptionError on a wrong password."""
    try:
        blob = b64_decode(blob_b64)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise DecryptionError("Wrapped key is not valid base64") from exc
    if len(blob) < SALT_SIZE + IV_SIZE + TAG_SIZE:
        raise DecryptionError("Wrapped key is too short")
    salt, rest = blob[:SALT_SIZE], blob[SALT_SIZE:]
    key = decrypt_bytes(rest, derive_key_from_password(password, salt))
    if len(key) != KEY_SIZE:
        raise DecryptionError("Unwrapped key has the wrong size")
    return key


# ---------------------------------------------------
# Identity keys + public-key wrapping ("publicKey")
# ---------------------------------------------------

def generate_identity_keypair() -> Tuple[x25519.X25519PrivateKey, x25519.X25519PublicKey]:
    """Fresh X25519 identity keypair."""
    priv = x25519.X25519PrivateKey.generate()
    return priv, priv.public_key()


def export_public_key(pub: x25519.X25519PublicKey) -> str:
    """Raw 32-byte public key -> Base64."""
    raw = pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return b64_encode(raw)


def import_public_key(data: str) -> x25519.X25519PublicKey:
    """Inverse of export_public_key()."""
    if not isinstance(data, str):
        raise KeyFormatError("Public key must be a string.")
    try:
        raw = b64_decode(data)
    except (binascii.Error, ValueError) as exc:
        raise KeyFormatError(f"Public key is not valid base64: {exc}") from exc
    if len(raw) != PUBLIC_KEY_SIZE:
        raise KeyFormatError("Public key must decode to 32 bytes.")
    return x25519.X25519PublicKey.from_public_bytes(raw)


def export_private_key_pem(priv: x25519.X25519PrivateKey) -> bytes:
    """
    Export the identity key in PKCS#8 (unencrypted) form.
    Store safely if you write this to disk; this is the raw key.
    """
    return priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key_pem(pem_bytes: bytes) -> x25519.X25519PrivateKey:
    """Load an unencrypted PKCS#8 PEM identity key."""
    try:
        priv = serialization.load_pem_private_key(pem_bytes, password=None)
    except ValueError as exc:
        raise KeyFormatError(f"Invalid identity key PEM: {exc}") from exc
    if not isinstance(priv, x25519.X25519PrivateKey):
        raise KeyFormatError("Identity key must be X25519.")
    return priv


def _wrapping_key(shared_secret: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=WRAP_INFO,
    ).derive(shared_secret)


def wrap_key_for_recipient(key: bytes, recipient: x25519.X25519PublicKey) -> str:
    """
    Wrap a conversation key so only the holder of `recipient`'s private key
    can recover it. A throwaway ephemeral key does the DH on our side.
    """
    enforce_key_size(key)
    eph_priv, eph_pub = generate_identity_keypair()
    wrapping = _wrapping_key(eph_priv.exchange(recipient))
    eph_raw = eph_pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    # Bind the ephemeral key into the tag so it can't be swapped.
    return b64_encode(eph_raw + encrypt_bytes(bytes(key), wrapping, aad=eph_raw))


def unwrap_key_with_identity(blob_b64: str, priv: x25519.X25519PrivateKey) -> bytes:
    """Inverse of wrap_key_for_recipient(); DecryptionError if not ours."""
    try:
        blob = b64_decode(blob_b64)
    except (binascii.Error, ValueError, AttributeError) as exc:
        raise DecryptionError("Wrapped key is not valid base64") from exc
    if len(blob) < PUBLIC_KEY_SIZE + IV_SIZE + TAG_SIZE:
        raise DecryptionError("Wrapped key is too short")
    eph_raw, rest = blob[:PUBLIC_KEY_SIZE], blob[PUBLIC_KEY_SIZE:]
    try:
        shared = priv.exchange(x25519.X25519PublicKey.from_public_bytes(eph_raw))
    except ValueError as exc:
        # all-zero / low-order point
        raise DecryptionError("Invalid ephemeral key") from exc
    key = decrypt_bytes(rest, _wrapping_key(shared), aad=eph_raw)
    if len(key) != KEY_SIZE:
        raise DecryptionError("Unwrapped key has the wrong size")
    return key
