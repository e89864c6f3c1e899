"""
Configuration for Kiss2FA.
Settings come from the environment (optionally a .env file) and are gathered
into one AppContext that is passed to every component.
"""
import os
import logging
from dataclasses import dataclass

from dotenv import load_dotenv

from crypto_utils import (
    DEFAULT_STATIC_SALT,
    LOGIN_SCHEMES,
    MAX_ARGON2_MEMORY_COST,
    VAULT_SCHEMES,
    LoginHasher,
    VaultCipher,
)
from storage import Storage
from totp import TOTPEngine
from utils import SessionManager

# Configure logging
logger = logging.getLogger(__name__)

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


@dataclass
class Config:
    """Runtime settings."""
    db_path: str = './kiss2fa.db'
    session_timeout: int = 1800
    vault_kdf: str = 'legacy'
    login_hash: str = 'legacy'
    static_salt: str = DEFAULT_STATIC_SALT
    pbkdf2_iterations: int = 200000
    argon2_time_cost: int = 2
    argon2_memory_cost: int = 102400
    argon2_parallelism: int = 8
    totp_zero_pad: bool = False
    log_file: str = 'kiss2fa.log'
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Build a Config from environment variables, loading .env first."""
        load_dotenv()

        config = cls(
            db_path=os.getenv('DB_PATH', cls.db_path),
            session_timeout=int(os.getenv('SESSION_TIMEOUT', str(cls.session_timeout))),
            vault_kdf=os.getenv('VAULT_KDF', cls.vault_kdf).lower(),
            login_hash=os.getenv('LOGIN_HASH', cls.login_hash).lower(),
            static_salt=os.getenv('STATIC_SALT', cls.static_salt),
            pbkdf2_iterations=int(os.getenv('PBKDF2_ITERATIONS', str(cls.pbkdf2_iterations))),
            argon2_time_cost=int(os.getenv('ARGON2_TIME_COST', str(cls.argon2_time_cost))),
            argon2_memory_cost=int(os.getenv('ARGON2_MEMORY_COST', str(cls.argon2_memory_cost))),
            argon2_parallelism=int(os.getenv('ARGON2_PARALLELISM', str(cls.argon2_parallelism))),
            totp_zero_pad=os.getenv('TOTP_ZERO_PAD', 'false').lower() in _TRUE_VALUES,
            log_file=os.getenv('LOG_FILE', cls.log_file),
            log_level=os.getenv('LOG_LEVEL', cls.log_level).upper(),
        )
        config.validate()
        return config

    def validate(self):
        """
        Check setting values.

        Raises:
            ValueError: If a setting is out of range
        """
        if self.vault_kdf not in VAULT_SCHEMES:
            raise ValueError(f"VAULT_KDF must be one of {', '.join(VAULT_SCHEMES)}")
        if self.login_hash not in LOGIN_SCHEMES:
            raise ValueError(f"LOGIN_HASH must be one of {', '.join(LOGIN_SCHEMES)}")
        if self.session_timeout < 60:
            raise ValueError("SESSION_TIMEOUT must be at least 60 seconds")
        if self.pbkdf2_iterations < 1:
            raise ValueError("PBKDF2_ITERATIONS must be positive")
        if self.argon2_time_cost < 1 or self.argon2_parallelism < 1:
            raise ValueError("ARGON2_TIME_COST and ARGON2_PARALLELISM must be positive")
        if self.argon2_memory_cost < 8 * self.argon2_parallelism:
            raise ValueError("ARGON2_MEMORY_COST must be at least 8 KiB per lane")
        if self.argon2_memory_cost > MAX_ARGON2_MEMORY_COST:
            raise ValueError(f"ARGON2_MEMORY_COST must not exceed {MAX_ARGON2_MEMORY_COST} KiB")


@dataclass
class AppContext:
    """Components shared by the service layer, built once at start-up."""
    config: Config
    storage: Storage
    cipher: VaultCipher
    hasher: LoginHasher
    engine: TOTPEngine
    sessions: SessionManager


def build_context(config: Config) -> AppContext:
    """Construct every component from one Config."""
    cipher = VaultCipher(
        scheme=config.vault_kdf,
        pbkdf2_iterations=config.pbkdf2_iterations,
        argon2_time_cost=config.argon2_time_cost,
        argon2_memory_cost=config.argon2_memory_cost,
        argon2_parallelism=config.argon2_parallelism,
    )
    hasher = LoginHasher(
        scheme=config.login_hash,
        static_salt=config.static_salt,
        time_cost=config.argon2_time_cost,
        memory_cost=config.argon2_memory_cost,
        parallelism=config.argon2_parallelism,
    )

    logger.info("Using vault scheme %s and login hash %s", config.vault_kdf, config.login_hash)

    return AppContext(
        config=config,
        storage=Storage(config.db_path),
        cipher=cipher,
        hasher=hasher,
        engine=TOTPEngine(zero_pad=config.totp_zero_pad),
        sessions=SessionManager(idle_timeout=config.session_timeout),
    )
