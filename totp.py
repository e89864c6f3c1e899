"""
TOTP code generation for Kiss2FA.
Implements HOTP/TOTP (RFC 4226/6238) over Base32 secrets with SHA-1/256/384/512.
"""
import time
import struct
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

from cryptography.hazmat.primitives import hashes, hmac
import pyotp

from errors import InvalidSecretError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 30
DEFAULT_DIGITS = 6
DEFAULT_ALGORITHM = 'SHA-1'
PLACEHOLDER_CHAR = '-'
MAX_PLACEHOLDER_LENGTH = 6

BASE32_ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZ234567'
_BASE32_VALUES = {char: value for value, char in enumerate(BASE32_ALPHABET)}

ALGORITHMS = {
    'SHA-1': hashes.SHA1,
    'SHA-256': hashes.SHA256,
    'SHA-384': hashes.SHA384,
    'SHA-512': hashes.SHA512,
}

# hashlib digest names as reported by pyotp
_HASHLIB_NAMES = {
    'sha1': 'SHA-1',
    'sha256': 'SHA-256',
    'sha384': 'SHA-384',
    'sha512': 'SHA-512',
}


@dataclass
class TOTPResult:
    """A generated code and the epoch millisecond at which it stops being valid."""
    otp: str
    expires: int


def normalize_algorithm(algorithm: str) -> str:
    """
    Map an algorithm name to its canonical form.

    Accepts 'SHA-1', 'SHA1', 'sha256', 'Sha-512' and so on.

    Raises:
        ValueError: If the algorithm is not supported
    """
    key = algorithm.upper().replace('-', '').replace('_', '')
    for name in ALGORITHMS:
        if name.replace('-', '') == key:
            return name
    raise ValueError(f"Unsupported TOTP algorithm: {algorithm}")


def decode_base32(secret: str) -> bytes:
    """
    Decode a Base32 secret into raw key bytes.

    The secret is uppercased and trailing '=' padding is dropped. Unlike
    base64.b32decode, any length is accepted: the output holds
    floor(len * 5 / 8) bytes and leftover bits are discarded.

    Args:
        secret: Base32 encoded secret

    Returns:
        Decoded key bytes

    Raises:
        InvalidSecretError: If the secret contains a non-Base32 character
    """
    text = secret.upper().rstrip('=')

    value = 0
    bits = 0
    output = bytearray()
    for char in text:
        digit = _BASE32_VALUES.get(char)
        if digit is None:
            raise InvalidSecretError("Invalid base32 character in key")
        value = (value << 5) | digit
        bits += 5
        if bits >= 8:
            bits -= 8
            output.append((value >> bits) & 0xFF)
            value &= (1 << bits) - 1

    return bytes(output)


class TOTPEngine:
    """Stateless TOTP generator."""

    def __init__(self, zero_pad: bool = False):
        """
        Initialize the engine.

        Args:
            zero_pad: Left-pad codes shorter than the requested digit count
                with zeros (strict RFC 4226). When False, the decimal suffix
                is returned as-is, matching deployed clients.
        """
        self.zero_pad = zero_pad

    def generate(self, secret: str, period: int = DEFAULT_PERIOD,
                 digits: int = DEFAULT_DIGITS, algorithm: str = DEFAULT_ALGORITHM,
                 timestamp: Optional[int] = None, encoding: str = 'base32') -> TOTPResult:
        """
        Generate the TOTP code for a point in time.

        Args:
            secret: Shared secret, Base32 text unless encoding is 'ascii'
            period: Seconds per code window
            digits: Number of code digits
            algorithm: One of SHA-1, SHA-256, SHA-384, SHA-512
            timestamp: Epoch milliseconds, defaults to now
            encoding: 'base32' or 'ascii' (raw secret bytes as key)

        Returns:
            TOTPResult with the code and the window expiry in epoch milliseconds

        Raises:
            InvalidSecretError: If the secret cannot be decoded
            ValueError: If period, digits, algorithm or encoding is invalid
        """
        if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
            raise ValueError("period must be a positive integer")
        if isinstance(digits, bool) or not isinstance(digits, int) or digits <= 0:
            raise ValueError("digits must be a positive integer")

        if timestamp is None:
            timestamp = time.time() * 1000
        timestamp = int(timestamp)

        key = self._key_bytes(secret, encoding)
        hash_cls = ALGORITHMS[normalize_algorithm(algorithm)]

        counter = (timestamp // 1000) // period
        mac = hmac.HMAC(key, hash_cls())
        mac.update(struct.pack('>Q', counter))
        digest = mac.finalize()

        # Dynamic truncation
        offset = digest[-1] & 0x0F
        truncated = struct.unpack('>I', digest[offset:offset + 4])[0] & 0x7FFFFFFF

        otp = str(truncated)[-digits:]
        if self.zero_pad:
            otp = otp.zfill(digits)

        return TOTPResult(otp=otp, expires=self.expires_at(period, timestamp))

    def generate_code(self, secret: str, period: int = DEFAULT_PERIOD,
                      digits: int = DEFAULT_DIGITS, algorithm: str = DEFAULT_ALGORITHM,
                      timestamp: Optional[int] = None) -> str:
        """
        Generate a display code, or a dash placeholder when the entry is unusable.

        A bad secret, period, digit count or algorithm only blanks this one code.
        """
        try:
            return self.generate(secret, period, digits, algorithm, timestamp).otp
        except (InvalidSecretError, ValueError) as e:
            logger.warning("Code unavailable: %s", e)
            if isinstance(digits, bool) or not isinstance(digits, int) or digits <= 0:
                digits = DEFAULT_DIGITS
            return placeholder_code(digits)

    @staticmethod
    def expires_at(period: int, timestamp: int) -> int:
        """Epoch millisecond at which the window containing timestamp ends."""
        period_ms = period * 1000
        return ((int(timestamp) + period_ms) // period_ms) * period_ms

    @staticmethod
    def time_remaining(period: int = DEFAULT_PERIOD, now: Optional[float] = None) -> int:
        """Seconds until the next code rotation, in the range [1, period]."""
        if now is None:
            now = time.time()
        epoch = int(now)
        return period - (epoch % period)

    @staticmethod
    def _key_bytes(secret: str, encoding: str) -> bytes:
        if encoding == 'base32':
            key = decode_base32(secret)
        elif encoding == 'ascii':
            key = secret.encode('latin-1')
        else:
            raise ValueError(f"Unsupported secret encoding: {encoding}")

        if not key:
            raise InvalidSecretError("Secret decodes to an empty key")
        return key


def placeholder_code(digits: int = DEFAULT_DIGITS) -> str:
    """Placeholder shown instead of a code that cannot be generated."""
    return PLACEHOLDER_CHAR * min(digits, MAX_PLACEHOLDER_LENGTH)


def random_secret() -> str:
    """
    Generate a new TOTP secret.

    Returns:
        Base32 encoded secret
    """
    return pyotp.random_base32()


def parse_otpauth_uri(uri: str) -> Dict[str, Any]:
    """
    Parse an otpauth://totp URI into entry fields.

    Args:
        uri: Provisioning URI, as encoded in authenticator QR codes

    Returns:
        Dictionary with name, secret, period, digits and algorithm

    Raises:
        ValueError: If the URI is malformed or is not a TOTP URI
    """
    otp = pyotp.parse_uri(uri)
    if not isinstance(otp, pyotp.TOTP):
        raise ValueError("Only otpauth://totp URIs are supported")

    name = otp.name or ''
    if otp.issuer and otp.issuer not in name:
        name = f"{otp.issuer} ({name})" if name else otp.issuer

    return {
        'name': name,
        'secret': otp.secret,
        'period': int(otp.interval),
        'digits': int(otp.digits),
        'algorithm': _HASHLIB_NAMES.get(otp.digest().name, DEFAULT_ALGORITHM),
    }


def provisioning_uri(name: str, secret: str, period: int = DEFAULT_PERIOD,
                     digits: int = DEFAULT_DIGITS, issuer: Optional[str] = None) -> str:
    """Render entry fields as an otpauth://totp URI."""
    otp = pyotp.TOTP(secret, digits=digits, interval=period)
    return otp.provisioning_uri(name=name, issuer_name=issuer)
