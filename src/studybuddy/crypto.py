"""
StudyBuddy - Cryptographic primitives for end-to-end encrypted messaging.

This module implements the building blocks of a message envelope:
- RSA-2048 identity keypairs (public exponent 65537)
- RSA-OAEP key wrapping with MGF1(SHA-256) and SHA-256
- AES-256-GCM authenticated encryption of message content
- Argon2id + AES-256-GCM sealing of local secrets under a passphrase

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)

Every function here is synchronous and CPU bound. Callers running on an
event loop push them to an executor (see codec.py and keystore.py).
"""

import base64
import binascii
import os
from typing import Dict, Union

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    AES_KEY_SIZE,
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    IV_SIZE,
    KEY_STORAGE_VERSION,
    RSA_KEY_SIZE,
    RSA_PUBLIC_EXPONENT,
    SALT_SIZE,
)

PublicKeyLike = Union[rsa.RSAPublicKey, str, bytes]
PrivateKeyLike = Union[rsa.RSAPrivateKey, str, bytes]

# Errors the cryptography library raises for bad key material or tags
CRYPTO_FAILURES = (ValueError, TypeError, InvalidTag, UnsupportedAlgorithm)


def _oaep() -> padding.OAEP:
    """OAEP padding shared by wrap and unwrap."""
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def b64encode(data: bytes) -> str:
    """Standard base64 text for wire and storage fields."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    """
    Strict base64 decoding.

    Raises:
        ValueError: If the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 data: {e}") from e


def generate_keypair() -> rsa.RSAPrivateKey:
    """
    Generate a fresh RSA identity keypair.

    2048-bit modulus with the standard 65537 exponent; the public half is
    available through ``private_key.public_key()``.
    """
    return rsa.generate_private_key(public_exponent=RSA_PUBLIC_EXPONENT, key_size=RSA_KEY_SIZE)


def serialize_private_key(private_key: rsa.RSAPrivateKey) -> str:
    """Export a private key as unencrypted PKCS#8 PEM text."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def serialize_public_key(public_key: rsa.RSAPublicKey) -> str:
    """Export a public key as SubjectPublicKeyInfo PEM text."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def load_private_key(data: PrivateKeyLike) -> rsa.RSAPrivateKey:
    """
    Load an RSA private key from PEM text, PEM bytes, or a key object.

    Raises:
        ValueError: If the data is not an RSA private key
    """
    if isinstance(data, rsa.RSAPrivateKey):
        return data
    if isinstance(data, str):
        data = data.encode("ascii")
    if not isinstance(data, bytes) or not data:
        raise ValueError("Private key is missing")
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except CRYPTO_FAILURES as e:
        raise ValueError(f"Malformed private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Private key is not an RSA key")
    return key


def load_public_key(data: PublicKeyLike) -> rsa.RSAPublicKey:
    """
    Load an RSA public key from PEM text, PEM bytes, or a key object.

    Raises:
        ValueError: If the data is not an RSA public key
    """
    if isinstance(data, rsa.RSAPublicKey):
        return data
    if isinstance(data, str):
        data = data.encode("ascii", errors="replace")
    if not isinstance(data, bytes) or not data:
        raise ValueError("Public key is missing")
    try:
        key = serialization.load_pem_public_key(data)
    except CRYPTO_FAILURES as e:
        raise ValueError(f"Malformed public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Public key is not an RSA key")
    return key


def generate_content_key() -> bytes:
    """Fresh random AES-256 key. Never reused across messages."""
    return AESGCM.generate_key(bit_length=AES_KEY_SIZE * 8)


def generate_iv() -> bytes:
    """Fresh random 96-bit GCM nonce. Never reused across messages."""
    return os.urandom(IV_SIZE)


def encrypt_content(plaintext: str, key: bytes, iv: bytes) -> bytes:
    """Encrypt UTF-8 message text with AES-256-GCM (tag appended)."""
    return AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)


def decrypt_content(ciphertext: bytes, key: bytes, iv: bytes) -> str:
    """
    Decrypt and authenticate AES-256-GCM message content.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails
        UnicodeDecodeError: If the plaintext is not UTF-8
    """
    return AESGCM(key).decrypt(iv, ciphertext, None).decode("utf-8")


def wrap_key(public_key: rsa.RSAPublicKey, content_key: bytes) -> bytes:
    """Asymmetrically encrypt a raw content key for one recipient."""
    return public_key.encrypt(content_key, _oaep())


def unwrap_key(private_key: rsa.RSAPrivateKey, wrapped_key: bytes) -> bytes:
    """
    Recover a raw content key with the recipient's private key.

    Raises:
        ValueError: If the wrapped key was not made for this private key
            or has been corrupted
    """
    content_key = private_key.decrypt(wrapped_key, _oaep())
    if len(content_key) != AES_KEY_SIZE:
        raise ValueError(f"Unwrapped key has unexpected length {len(content_key)}")
    return content_key


def public_key_fingerprint(public_key: rsa.RSAPublicKey) -> str:
    """
    SHA-256 fingerprint of the DER-encoded public key.

    Returns a 64-character hexadecimal string, used in logs and for
    out-of-band key verification.
    """
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(der)
    return digest.finalize().hex()


def _derive_storage_key(passphrase: str, salt: bytes) -> bytes:
    """Argon2id key derivation for local secret sealing."""
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=AES_KEY_SIZE,
        type=Type.ID,
    )


def seal_secret(secret: str, passphrase: str) -> Dict[str, str]:
    """
    Encrypt a local secret (such as a private key PEM) under a passphrase.

    Uses a unique salt and nonce per call:
        - Argon2id (time cost 3, 64 MB memory) derives a 256-bit key
        - AES-256-GCM encrypts and authenticates the secret
    """
    salt = os.urandom(SALT_SIZE)
    nonce = generate_iv()
    key = _derive_storage_key(passphrase, salt)
    ciphertext = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), None)

    return {
        "salt": b64encode(salt),
        "nonce": b64encode(nonce),
        "ciphertext": b64encode(ciphertext),
        "version": KEY_STORAGE_VERSION,
    }


def open_secret(sealed: Dict[str, str], passphrase: str) -> str:
    """
    Decrypt a secret produced by seal_secret.

    Raises:
        ValueError: If the passphrase is wrong or the data is corrupted
    """
    try:
        salt = b64decode(sealed["salt"])
        nonce = b64decode(sealed["nonce"])
        ciphertext = b64decode(sealed["ciphertext"])
    except (KeyError, TypeError) as e:
        raise ValueError(f"Sealed secret is incomplete: {e}") from e

    key = _derive_storage_key(passphrase, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None).decode("utf-8")
    except InvalidTag as e:
        raise ValueError("Incorrect passphrase or corrupted secret") from e
