"""
Exception classes for the Kiss2FA vault.
"""


class VaultError(Exception):
    """Base exception for vault operations"""
    pass


class InvalidSecretError(VaultError):
    """Raised when a TOTP secret is not valid Base32"""
    pass


class DecryptionError(VaultError):
    """Raised when a vault blob cannot be decrypted (wrong password or corrupted data)"""

    def __init__(self, message: str = "Invalid password or corrupted data"):
        super().__init__(message)


class SerializationError(VaultError):
    """Raised when a vault document cannot be serialized to JSON"""
    pass


class AtomicityViolation(VaultError):
    """Raised when a combined credential write failed and was rolled back"""
    pass


class VaultFormatError(VaultError):
    """Raised when decrypted data is not a vault document"""
    pass


class UnsupportedFormatError(VaultError):
    """Raised when an imported vault file has an unknown format tag"""
    pass


class FolderCycleError(VaultError):
    """Raised when a folder move would create a cycle"""
    pass


class NotFoundError(VaultError):
    """Raised when an entry, folder, user or vault does not exist"""
    pass


class ImmutableFieldError(VaultError):
    """Raised when an update tries to change an immutable field"""
    pass


class AuthenticationError(VaultError):
    """Raised when login credentials are invalid"""

    def __init__(self, message: str = "Invalid login credentials"):
        super().__init__(message)


class VaultLockedError(VaultError):
    """Raised when an operation needs an unlocked vault session"""
    pass
