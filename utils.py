"""
Utility functions for Kiss2FA.
"""
import re
import string
import secrets
import time
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

from vault import VaultDocument

# Configure logging
logger = logging.getLogger(__name__)

LOGIN_ID_LENGTH = 8
LOGIN_ID_CHARS = string.ascii_uppercase + string.ascii_lowercase + string.digits
MIN_PASSWORD_LENGTH = 6

_WHITESPACE = re.compile(r'\s')
_BASE32_SECRET = re.compile(r'^[A-Z2-7]+=*$')


def normalize_secret(secret: str) -> str:
    """Uppercase a secret and remove all whitespace."""
    return _WHITESPACE.sub('', secret.upper())


def validate_secret(secret: str) -> tuple:
    """
    Validate a normalized TOTP secret.

    Args:
        secret: Secret after normalize_secret

    Returns:
        Tuple of (is_valid, message)
    """
    if not secret:
        return False, "Please enter the secret key"

    if not _BASE32_SECRET.match(secret):
        return False, ("Invalid secret key format. Secret keys should only contain "
                       "letters A-Z and numbers 2-7")

    return True, "Secret key is valid"


def validate_password(password: str) -> tuple:
    """
    Validate a new account password.

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, message)
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"

    return True, "Password is valid"


def generate_login_id(length: int = LOGIN_ID_LENGTH) -> str:
    """Generate a random alphanumeric login identifier."""
    return ''.join(secrets.choice(LOGIN_ID_CHARS) for _ in range(length))


def format_code(code: str) -> str:
    """Split a 6-digit code in two groups for readability."""
    if len(code) == 6:
        return f"{code[:3]} {code[3:]}"
    return code


def format_code_list(codes: List[Dict[str, Any]]) -> str:
    """
    Format live codes for display.

    Args:
        codes: Items with 'name', 'code' and 'remaining'

    Returns:
        Formatted string
    """
    if not codes:
        return "No accounts found."

    width = max(len(item['name']) for item in codes)
    lines = []
    for item in codes:
        lines.append(f"{item['name']:<{width}}  {format_code(item['code'])}  ({item['remaining']}s)")

    return "\n".join(lines)


@dataclass
class VaultSession:
    """An unlocked vault: the decrypted document and the password it is saved under."""
    password: str
    document: VaultDocument
    expires_at: float = 0.0


class SessionManager:
    """Unlocked vaults held in memory per user, locked again after an idle timeout."""

    def __init__(self, idle_timeout: int = 1800):
        """
        Args:
            idle_timeout: Seconds without access before a vault locks itself
        """
        self.idle_timeout = idle_timeout
        self._unlocked: Dict[int, VaultSession] = {}

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._unlocked

    def __len__(self) -> int:
        return len(self._unlocked)

    def open(self, user_id: int, password: str, document: VaultDocument) -> VaultSession:
        """Start (or replace) the unlocked session for a user."""
        session = VaultSession(password=password, document=document)
        self._touch(session)
        self._unlocked[user_id] = session
        logger.info("Vault unlocked in memory for user %s", user_id)
        return session

    def get(self, user_id: int) -> Optional[VaultSession]:
        """
        Return the user's unlocked session and extend its lifetime.

        A session past its idle timeout is dropped and None is returned.
        """
        session = self._unlocked.get(user_id)
        if session is None:
            return None

        if self._expired(session):
            del self._unlocked[user_id]
            logger.info("Vault session for user %s timed out", user_id)
            return None

        self._touch(session)
        return session

    def close(self, user_id: int) -> bool:
        """Forget a user's unlocked vault; returns whether one was open."""
        if self._unlocked.pop(user_id, None) is None:
            return False
        logger.info("Vault locked for user %s", user_id)
        return True

    def purge_expired(self) -> int:
        """
        Drop every session past its idle timeout.

        Returns:
            Number of sessions removed
        """
        expired = [user_id for user_id, session in self._unlocked.items() if self._expired(session)]
        for user_id in expired:
            del self._unlocked[user_id]

        if expired:
            logger.info("Locked %d idle vault sessions", len(expired))
        return len(expired)

    def _touch(self, session: VaultSession) -> None:
        session.expires_at = time.monotonic() + self.idle_timeout

    @staticmethod
    def _expired(session: VaultSession) -> bool:
        return time.monotonic() >= session.expires_at
