"""
Vault service for Kiss2FA.
Ties accounts, storage, the vault cipher and the TOTP engine together.
"""
import copy
import time
import sqlite3
import logging
from typing import Any, Callable, Dict, List, Optional

from config import AppContext
from errors import (
    AuthenticationError,
    InvalidSecretError,
    NotFoundError,
    UnsupportedFormatError,
    VaultError,
    VaultLockedError,
)
from models import (
    DEFAULT_PERIOD,
    SUPPORTED_IMPORT_FORMATS,
    ExportedVault,
    Folder,
    TOTPEntry,
    User,
    positive_int,
)
from totp import DEFAULT_ALGORITHM, parse_otpauth_uri
from utils import (
    VaultSession,
    generate_login_id,
    normalize_secret,
    validate_password,
    validate_secret,
)
from vault import VaultDocument

# Configure logging
logger = logging.getLogger(__name__)

MAX_LOGIN_ID_ATTEMPTS = 5


class VaultService:
    """Account and vault operations on top of an AppContext."""

    def __init__(self, context: AppContext):
        """
        Initialize the service.

        Args:
            context: Shared components built at start-up
        """
        self.context = context
        self.storage = context.storage
        self.cipher = context.cipher
        self.hasher = context.hasher
        self.engine = context.engine
        self.sessions = context.sessions

    # Accounts

    def register(self, password: str) -> User:
        """
        Create an account with an empty vault encrypted under the password.

        Args:
            password: New account password

        Returns:
            The created user, including the generated login ID

        Raises:
            ValueError: If the password is too weak
        """
        is_valid, message = validate_password(password)
        if not is_valid:
            raise ValueError(message)

        password_hash = self.hasher.hash(password)
        empty_vault = self.cipher.encrypt(VaultDocument().to_payload(), password)

        for _ in range(MAX_LOGIN_ID_ATTEMPTS):
            login_id = generate_login_id()
            try:
                user_id = self.storage.add_user(login_id, password_hash, empty_vault)
            except sqlite3.IntegrityError:
                logger.warning("Login ID collision, retrying")
                continue
            return self.storage.get_user(user_id)

        raise VaultError("Failed to create user")

    def authenticate(self, login_id: str, password: str) -> User:
        """
        Check login credentials.

        Raises:
            AuthenticationError: If the login ID or password is wrong
        """
        user = self.storage.get_user_by_login_id(login_id)
        if not user or not self.hasher.verify(user.password_hash, password):
            logger.warning("Failed login attempt for login ID %s", login_id)
            raise AuthenticationError()

        if self.hasher.needs_rehash(user.password_hash):
            self.storage.update_password_hash(user.id, self.hasher.hash(password))
            logger.info("Upgraded login hash for user %s", user.id)

        return user

    def login(self, login_id: str, password: str) -> User:
        """Authenticate and unlock the vault in one step."""
        user = self.authenticate(login_id, password)
        self.unlock(user.id, password)
        return user

    def update_profile(self, user_id: int, name: str = None, logo: str = None) -> bool:
        return self.storage.update_user_profile(user_id, name=name, logo=logo)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """
        Change the account password and re-encrypt the vault under it.

        The new login hash and the re-encrypted vault are written in one
        transaction; on failure both old values remain.

        Raises:
            AuthenticationError: If the current password is wrong
            ValueError: If the new password is too weak
            DecryptionError: If the vault cannot be decrypted with the current password
            AtomicityViolation: If the combined write failed
        """
        user = self._get_user(user_id)
        if not self.hasher.verify(user.password_hash, current_password):
            raise AuthenticationError("Current password is incorrect")

        is_valid, message = validate_password(new_password)
        if not is_valid:
            raise ValueError(message)

        blob = self.storage.get_vault(user_id)
        if blob is None:
            raise NotFoundError("Vault not found")

        payload = self.cipher.decrypt(blob, current_password)
        new_blob = self.cipher.encrypt(payload, new_password)
        self.storage.replace_credentials(user_id, self.hasher.hash(new_password), new_blob)

        session = self.sessions.get(user_id)
        if session:
            session.password = new_password

        logger.info("Password changed for user %s", user_id)

    def delete_account(self, user_id: int, password: str) -> None:
        """
        Delete an account and its vault.

        Raises:
            AuthenticationError: If the password is wrong
        """
        user = self._get_user(user_id)
        if not self.hasher.verify(user.password_hash, password):
            raise AuthenticationError("Password is incorrect")

        if not self.storage.delete_user(user_id):
            raise VaultError("Failed to delete account")

        self.sessions.close(user_id)
        logger.info("Deleted account for user %s", user_id)

    # Vault sessions

    def vault_exists(self, user_id: int) -> bool:
        return self.storage.vault_exists(user_id)

    def unlock(self, user_id: int, password: str) -> VaultDocument:
        """
        Decrypt the user's vault and keep it in an in-memory session.

        Vaults written with another encryption scheme than the configured
        one are re-encrypted on the way.

        Returns:
            The decrypted vault document

        Raises:
            NotFoundError: If the user has no vault
            DecryptionError: If the password is wrong or the vault is corrupted
        """
        blob = self.storage.get_vault(user_id)
        if blob is None:
            raise NotFoundError("Vault not found")

        document = VaultDocument.from_payload(self.cipher.decrypt(blob, password))

        if self.cipher.needs_upgrade(blob):
            upgraded = self.cipher.encrypt(document.to_payload(), password)
            if self.storage.put_vault(user_id, upgraded):
                logger.info("Re-encrypted vault for user %s with scheme %s", user_id, self.cipher.scheme)
            else:
                logger.warning("Could not re-encrypt vault for user %s; keeping the %s blob",
                               user_id, self.cipher.scheme_of(blob))

        self.sessions.open(user_id, password, document)
        return document

    def lock(self, user_id: int) -> None:
        self.sessions.close(user_id)

    def get_document(self, user_id: int) -> VaultDocument:
        return self._session(user_id).document

    def save(self, user_id: int) -> None:
        """
        Encrypt the session document and persist it.

        Raises:
            VaultLockedError: If the vault is not unlocked
            VaultError: If storage rejected the write
        """
        self._persist(user_id, self._session(user_id))

    # Entries

    def add_entry(self, user_id: int, name: str = None, secret: str = None,
                  icon: str = None, period: int = 30, digits: int = 6,
                  folder_id: Optional[str] = None, uri: Optional[str] = None) -> TOTPEntry:
        """
        Add an entry from a secret or an otpauth:// URI.

        Args:
            user_id: User ID
            name: Display name (taken from the URI when omitted)
            secret: Base32 secret, normalized before storing
            icon: Glyph or data:image payload
            period: Seconds per code window
            digits: Code length
            folder_id: Optional folder
            uri: otpauth://totp URI instead of name/secret/period/digits

        Returns:
            The created entry

        Raises:
            InvalidSecretError: If the secret is not Base32
            ValueError: If the name is missing, the URI is unusable, or period/digits
                is not a positive integer
        """
        if uri:
            fields = parse_otpauth_uri(uri)
            if fields['algorithm'] != DEFAULT_ALGORITHM:
                raise ValueError(f"Unsupported algorithm {fields['algorithm']}; only SHA-1 accounts can be stored")
            name = name or fields['name']
            secret = fields['secret']
            period = fields['period']
            digits = fields['digits']

        if not name or not name.strip():
            raise ValueError("Please enter a name for this account")

        secret = normalize_secret(secret or '')
        is_valid, message = validate_secret(secret)
        if not is_valid:
            raise InvalidSecretError(message)

        entry = self._mutate(user_id, lambda doc: doc.add_entry(
            name=name.strip(), secret=secret, icon=icon, period=period,
            digits=digits, folder_id=folder_id,
        ))
        logger.info("Added entry %s for user %s", entry.id, user_id)
        return entry

    def update_entry(self, user_id: int, entry_id: str, **changes) -> TOTPEntry:
        return self._mutate(user_id, lambda doc: doc.update_entry(entry_id, **changes))

    def delete_entry(self, user_id: int, entry_id: str) -> None:
        self._mutate(user_id, lambda doc: doc.delete_entry(entry_id))
        logger.info("Deleted entry %s for user %s", entry_id, user_id)

    def move_entry(self, user_id: int, entry_id: str, folder_id: Optional[str]) -> TOTPEntry:
        return self._mutate(user_id, lambda doc: doc.move_entry(entry_id, folder_id))

    # Folders

    def add_folder(self, user_id: int, name: str, **options) -> Folder:
        if not name or not name.strip():
            raise ValueError("Folder name is required")
        return self._mutate(user_id, lambda doc: doc.add_folder(name.strip(), **options))

    def update_folder(self, user_id: int, folder_id: str, **changes) -> Folder:
        return self._mutate(user_id, lambda doc: doc.update_folder(folder_id, **changes))

    def delete_folder(self, user_id: int, folder_id: str) -> None:
        self._mutate(user_id, lambda doc: doc.delete_folder(folder_id))

    def move_folder(self, user_id: int, folder_id: str, parent_id: Optional[str]) -> Folder:
        return self._mutate(user_id, lambda doc: doc.move_folder(folder_id, parent_id))

    # Codes

    def codes(self, user_id: int, timestamp: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Current codes for every entry.

        Args:
            user_id: User ID
            timestamp: Epoch milliseconds, defaults to now

        Returns:
            List of dicts with id, name, code, expires and remaining seconds
        """
        if timestamp is None:
            timestamp = int(time.time() * 1000)

        result = []
        for entry in self.get_document(user_id).entries:
            code = self.engine.generate_code(
                entry.secret, entry.period, entry.digits, timestamp=timestamp
            )
            # Countdown for an unusable period falls back to the default window.
            try:
                period = positive_int('period', entry.period)
            except ValueError:
                period = DEFAULT_PERIOD
            result.append({
                'id': entry.id,
                'name': entry.name,
                'code': code,
                'expires': self.engine.expires_at(period, timestamp),
                'remaining': self.engine.time_remaining(period, timestamp / 1000),
            })
        return result

    # Export / import

    def export_vault(self, user_id: int, password: str) -> ExportedVault:
        """
        Export the stored encrypted vault.

        Raises:
            NotFoundError: If there is no vault
            DecryptionError: If the password does not open the vault
        """
        blob = self.storage.get_vault(user_id)
        if not blob:
            raise NotFoundError("No vault found")

        self.cipher.decrypt(blob, password)
        logger.info("Exported vault for user %s", user_id)
        return ExportedVault.create(blob)

    def import_vault(self, user_id: int, exported: ExportedVault, password: str) -> VaultDocument:
        """
        Replace the unlocked vault with an exported one.

        The imported data is decrypted with the password it was exported
        under and stored re-encrypted under the session password.

        Raises:
            UnsupportedFormatError: If the file format tag is unknown
            DecryptionError: If password does not open the imported data
            VaultLockedError: If the vault is not unlocked
        """
        if exported.format not in SUPPORTED_IMPORT_FORMATS:
            raise UnsupportedFormatError(f"Unsupported vault format: {exported.format}")

        session = self._session(user_id)
        document = VaultDocument.from_payload(self.cipher.decrypt(exported.data, password))

        previous = session.document
        session.document = document
        try:
            self._persist(user_id, session)
        except VaultError:
            session.document = previous
            raise

        logger.info("Imported vault for user %s (%d entries)", user_id, len(document.entries))
        return document

    # Internals

    def _get_user(self, user_id: int) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def _session(self, user_id: int) -> VaultSession:
        session = self.sessions.get(user_id)
        if session is None:
            raise VaultLockedError("Vault is locked")
        return session

    def _persist(self, user_id: int, session: VaultSession) -> None:
        blob = self.cipher.encrypt(session.document.to_payload(), session.password)
        if not self.storage.put_vault(user_id, blob):
            raise VaultError("Failed to save vault")

    def _mutate(self, user_id: int, operation: Callable[[VaultDocument], Any]) -> Any:
        session = self._session(user_id)
        snapshot = copy.deepcopy(session.document)

        result = operation(session.document)
        try:
            self._persist(user_id, session)
        except VaultError:
            session.document = snapshot
            raise
        return result
