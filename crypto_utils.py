"""
Cryptographic utilities for Kiss2FA.
Handles vault encryption, decryption and login password hashing.
"""
import json
import base64
import binascii
import secrets
import struct
import logging
from typing import Any, Optional, Tuple

import argon2
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import constant_time, hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.exceptions import InvalidTag

from errors import DecryptionError, SerializationError

# Configure logging
logger = logging.getLogger(__name__)

# OpenSSL "enc" / CryptoJS passphrase format
LEGACY_MAGIC = b'Salted__'
LEGACY_SALT_LENGTH = 8
LEGACY_KEY_LENGTH = 32
LEGACY_IV_LENGTH = 16
AES_BLOCK_SIZE = 16

# Authenticated format
HARDENED_MAGIC = b'K2FA'
HARDENED_VERSION = 2
KDF_PBKDF2 = 1
KDF_ARGON2ID = 2
SALT_LENGTH = 16
NONCE_LENGTH = 12
KEY_LENGTH = 32

# Upper bounds for KDF parameters read from a blob
MAX_PBKDF2_ITERATIONS = 10_000_000
MAX_ARGON2_TIME_COST = 64
MAX_ARGON2_MEMORY_COST = 1024 * 1024  # KiB

VAULT_SCHEMES = ('legacy', 'pbkdf2', 'argon2id')
LOGIN_SCHEMES = ('legacy', 'argon2')
DEFAULT_STATIC_SALT = 'Kiss2FA-static-salt-for-consistent-hashing'


def evp_bytes_to_key(passphrase: bytes, salt: bytes,
                     key_length: int = LEGACY_KEY_LENGTH,
                     iv_length: int = LEGACY_IV_LENGTH) -> Tuple[bytes, bytes]:
    """
    OpenSSL EVP_BytesToKey with MD5 and a single iteration.

    Args:
        passphrase: Passphrase bytes
        salt: 8-byte salt

    Returns:
        Tuple of (key, iv)
    """
    derived = b''
    block = b''
    while len(derived) < key_length + iv_length:
        digest = hashes.Hash(hashes.MD5())
        digest.update(block + passphrase + salt)
        block = digest.finalize()
        derived += block
    return derived[:key_length], derived[key_length:key_length + iv_length]


class VaultCipher:
    """Passphrase-based encryption of JSON vault documents into opaque strings."""

    def __init__(self, scheme: str = 'legacy', pbkdf2_iterations: int = 200000,
                 argon2_time_cost: int = 2, argon2_memory_cost: int = 102400,
                 argon2_parallelism: int = 8):
        """
        Initialize the vault cipher.

        Args:
            scheme: 'legacy' (CryptoJS-compatible, no key stretching),
                'pbkdf2' or 'argon2id' (key stretching plus AES-GCM)
            pbkdf2_iterations: PBKDF2-HMAC-SHA256 iterations for new blobs
            argon2_time_cost: Argon2id iterations for new blobs
            argon2_memory_cost: Argon2id memory in KiB for new blobs
            argon2_parallelism: Argon2id lanes for new blobs
        """
        if scheme not in VAULT_SCHEMES:
            raise ValueError(f"Unknown vault encryption scheme: {scheme}")

        self.scheme = scheme
        self.pbkdf2_iterations = pbkdf2_iterations
        self.argon2_time_cost = argon2_time_cost
        self.argon2_memory_cost = argon2_memory_cost
        self.argon2_parallelism = argon2_parallelism

        if scheme == 'legacy':
            logger.warning(
                "Vault encryption uses the raw password as AES passphrase without "
                "key stretching; set VAULT_KDF=argon2id or pbkdf2 to harden new vaults"
            )

    @staticmethod
    def serialize(document: Any) -> bytes:
        """
        Serialize a document to compact JSON text.

        Raises:
            SerializationError: If the document is not JSON-serializable
        """
        try:
            text = json.dumps(document, separators=(',', ':'),
                              ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError, RecursionError) as e:
            raise SerializationError(f"Vault document is not serializable: {e}") from e
        return text.encode('utf-8')

    def encrypt(self, document: Any, passphrase: str) -> str:
        """
        Encrypt a JSON-serializable document.

        Args:
            document: Vault document
            passphrase: User's password

        Returns:
            Base64 text holding salt, IV/nonce and ciphertext
        """
        plaintext = self.serialize(document)
        secret = passphrase.encode('utf-8')

        if self.scheme == 'legacy':
            raw = self._encrypt_legacy(plaintext, secret)
        else:
            raw = self._encrypt_hardened(plaintext, secret)

        return base64.b64encode(raw).decode('ascii')

    def decrypt(self, blob: str, passphrase: str) -> Any:
        """
        Decrypt a blob produced by encrypt (any scheme).

        Args:
            blob: Encrypted vault string
            passphrase: User's password

        Returns:
            The decoded JSON document

        Raises:
            DecryptionError: If the password is wrong or the blob is corrupted
        """
        raw = self._decode_blob(blob)
        secret = passphrase.encode('utf-8')

        if raw.startswith(LEGACY_MAGIC):
            plaintext = self._decrypt_legacy(raw, secret)
        elif raw.startswith(HARDENED_MAGIC):
            plaintext = self._decrypt_hardened(raw, secret)
        else:
            raise DecryptionError()

        try:
            return json.loads(plaintext.decode('utf-8'))
        except ValueError as e:
            raise DecryptionError() from e

    def scheme_of(self, blob: str) -> Optional[str]:
        """Return the scheme a blob was written with, or None if unrecognised."""
        try:
            raw = self._decode_blob(blob)
        except DecryptionError:
            return None

        if raw.startswith(LEGACY_MAGIC):
            return 'legacy'
        if raw.startswith(HARDENED_MAGIC) and len(raw) > 5:
            return {KDF_PBKDF2: 'pbkdf2', KDF_ARGON2ID: 'argon2id'}.get(raw[5])
        return None

    def needs_upgrade(self, blob: str) -> bool:
        """Whether a blob was written with a scheme other than the configured one."""
        return self.scheme_of(blob) != self.scheme

    @staticmethod
    def _decode_blob(blob: str) -> bytes:
        if not isinstance(blob, str):
            raise DecryptionError()
        try:
            return base64.b64decode(blob.encode('ascii'), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise DecryptionError() from e

    def _encrypt_legacy(self, plaintext: bytes, secret: bytes) -> bytes:
        salt = secrets.token_bytes(LEGACY_SALT_LENGTH)
        key, iv = evp_bytes_to_key(secret, salt)

        padder = padding.PKCS7(AES_BLOCK_SIZE * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return LEGACY_MAGIC + salt + ciphertext

    def _decrypt_legacy(self, raw: bytes, secret: bytes) -> bytes:
        header_length = len(LEGACY_MAGIC) + LEGACY_SALT_LENGTH
        ciphertext = raw[header_length:]
        if not ciphertext or len(ciphertext) % AES_BLOCK_SIZE:
            raise DecryptionError()

        salt = raw[len(LEGACY_MAGIC):header_length]
        key, iv = evp_bytes_to_key(secret, salt)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(AES_BLOCK_SIZE * 8).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptionError() from e

    def _encrypt_hardened(self, plaintext: bytes, secret: bytes) -> bytes:
        if self.scheme == 'argon2id':
            params = struct.pack('>IIB', self.argon2_time_cost,
                                 self.argon2_memory_cost, self.argon2_parallelism)
            kdf_id = KDF_ARGON2ID
        else:
            params = struct.pack('>I', self.pbkdf2_iterations)
            kdf_id = KDF_PBKDF2

        salt = secrets.token_bytes(SALT_LENGTH)
        nonce = secrets.token_bytes(NONCE_LENGTH)
        header = HARDENED_MAGIC + struct.pack('>BB', HARDENED_VERSION, kdf_id) + params + salt + nonce

        key = self._derive_key(kdf_id, params, secret, salt)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, header)

        return header + ciphertext

    def _decrypt_hardened(self, raw: bytes, secret: bytes) -> bytes:
        try:
            version, kdf_id = struct.unpack_from('>BB', raw, len(HARDENED_MAGIC))
            offset = len(HARDENED_MAGIC) + 2
            if kdf_id == KDF_ARGON2ID:
                params_length = struct.calcsize('>IIB')
            elif kdf_id == KDF_PBKDF2:
                params_length = struct.calcsize('>I')
            else:
                raise DecryptionError()
        except struct.error as e:
            raise DecryptionError() from e

        if version != HARDENED_VERSION:
            raise DecryptionError()

        params = raw[offset:offset + params_length]
        offset += params_length
        salt = raw[offset:offset + SALT_LENGTH]
        offset += SALT_LENGTH
        nonce = raw[offset:offset + NONCE_LENGTH]
        offset += NONCE_LENGTH
        if len(raw) <= offset:
            raise DecryptionError()

        key = self._derive_key(kdf_id, params, secret, salt)
        try:
            return AESGCM(key).decrypt(nonce, raw[offset:], raw[:offset])
        except InvalidTag as e:
            raise DecryptionError() from e

    @staticmethod
    def _derive_key(kdf_id: int, params: bytes, secret: bytes, salt: bytes) -> bytes:
        if kdf_id == KDF_ARGON2ID:
            time_cost, memory_cost, parallelism = struct.unpack('>IIB', params)
            if not (1 <= time_cost <= MAX_ARGON2_TIME_COST
                    and parallelism >= 1
                    and 8 * parallelism <= memory_cost <= MAX_ARGON2_MEMORY_COST):
                raise DecryptionError()
            return hash_secret_raw(
                secret=secret,
                salt=salt,
                time_cost=time_cost,
                memory_cost=memory_cost,
                parallelism=parallelism,
                hash_len=KEY_LENGTH,
                type=Type.ID,
            )

        (iterations,) = struct.unpack('>I', params)
        if not 1 <= iterations <= MAX_PBKDF2_ITERATIONS:
            raise DecryptionError()
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(secret)


class LoginHasher:
    """One-way hashing of account passwords for login verification."""

    def __init__(self, scheme: str = 'legacy', static_salt: str = DEFAULT_STATIC_SALT,
                 time_cost: int = 2, memory_cost: int = 102400, parallelism: int = 8):
        """
        Initialize the login hasher.

        Args:
            scheme: 'legacy' (SHA-256 over password plus static salt) or
                'argon2' (Argon2id encoded hashes)
            static_salt: Salt appended to the password by the legacy scheme
            time_cost: Argon2 iterations
            memory_cost: Argon2 memory in KiB
            parallelism: Argon2 lanes
        """
        if scheme not in LOGIN_SCHEMES:
            raise ValueError(f"Unknown login hash scheme: {scheme}")

        self.scheme = scheme
        self.static_salt = static_salt
        self.argon2_hasher = argon2.PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=16
        )

    def hash(self, password: str) -> str:
        """Hash a password with the configured scheme."""
        if self.scheme == 'argon2':
            return self.argon2_hasher.hash(password)
        return self._legacy_hash(password)

    def verify(self, stored_hash: str, password: str) -> bool:
        """
        Check a password against a stored hash of either scheme.

        Returns:
            True if the password matches
        """
        if self._is_argon2(stored_hash):
            try:
                return self.argon2_hasher.verify(stored_hash, password)
            except (argon2.exceptions.VerificationError, argon2.exceptions.InvalidHashError):
                return False

        return constant_time.bytes_eq(
            self._legacy_hash(password).encode('ascii'),
            stored_hash.encode('utf-8')
        )

    def needs_rehash(self, stored_hash: str) -> bool:
        """Whether a stored hash should be replaced after a successful login."""
        if self.scheme != 'argon2':
            return False
        if not self._is_argon2(stored_hash):
            return True
        return self.argon2_hasher.check_needs_rehash(stored_hash)

    def _legacy_hash(self, password: str) -> str:
        digest = hashes.Hash(hashes.SHA256())
        digest.update((password + self.static_salt).encode('utf-8'))
        return digest.finalize().hex()

    @staticmethod
    def _is_argon2(stored_hash: str) -> bool:
        return stored_hash.startswith('$argon2')
