"""
Tests for environment-driven configuration and context wiring.
"""
import pytest

from config import Config, build_context
from crypto_utils import DEFAULT_STATIC_SALT

ENV_VARS = (
    'DB_PATH', 'SESSION_TIMEOUT', 'VAULT_KDF', 'LOGIN_HASH', 'STATIC_SALT',
    'PBKDF2_ITERATIONS', 'ARGON2_TIME_COST', 'ARGON2_MEMORY_COST',
    'ARGON2_PARALLELISM', 'TOTP_ZERO_PAD', 'LOG_FILE', 'LOG_LEVEL',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_defaults():
    config = Config.from_env()
    assert config.db_path == './kiss2fa.db'
    assert config.session_timeout == 1800
    assert config.vault_kdf == 'legacy'
    assert config.login_hash == 'legacy'
    assert config.static_salt == DEFAULT_STATIC_SALT
    assert config.totp_zero_pad is False
    assert config.log_level == 'INFO'


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv('DB_PATH', '/tmp/vault.db')
    monkeypatch.setenv('SESSION_TIMEOUT', '600')
    monkeypatch.setenv('VAULT_KDF', 'Argon2id')
    monkeypatch.setenv('LOGIN_HASH', 'argon2')
    monkeypatch.setenv('PBKDF2_ITERATIONS', '5000')
    monkeypatch.setenv('ARGON2_TIME_COST', '3')
    monkeypatch.setenv('ARGON2_MEMORY_COST', '65536')
    monkeypatch.setenv('ARGON2_PARALLELISM', '4')
    monkeypatch.setenv('TOTP_ZERO_PAD', 'yes')
    monkeypatch.setenv('LOG_LEVEL', 'debug')

    config = Config.from_env()
    assert config.db_path == '/tmp/vault.db'
    assert config.session_timeout == 600
    assert config.vault_kdf == 'argon2id'
    assert config.login_hash == 'argon2'
    assert config.pbkdf2_iterations == 5000
    assert config.argon2_time_cost == 3
    assert config.argon2_memory_cost == 65536
    assert config.argon2_parallelism == 4
    assert config.totp_zero_pad is True
    assert config.log_level == 'DEBUG'


@pytest.mark.parametrize("name,value", [
    ('VAULT_KDF', 'rot13'),
    ('LOGIN_HASH', 'md5'),
    ('SESSION_TIMEOUT', '10'),
    ('SESSION_TIMEOUT', 'soon'),
    ('PBKDF2_ITERATIONS', '0'),
    ('ARGON2_TIME_COST', '0'),
    ('ARGON2_PARALLELISM', '0'),
    ('ARGON2_MEMORY_COST', '7'),
    ('ARGON2_MEMORY_COST', str(2 * 1024 * 1024)),
])
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        Config.from_env()


def test_build_context(tmp_path):
    config = Config(
        db_path=str(tmp_path / 'ctx.db'),
        vault_kdf='pbkdf2',
        login_hash='argon2',
        session_timeout=120,
        totp_zero_pad=True,
    )
    context = build_context(config)
    try:
        assert context.config is config
        assert context.cipher.scheme == 'pbkdf2'
        assert context.hasher.scheme == 'argon2'
        assert context.engine.zero_pad is True
        assert context.sessions.idle_timeout == 120
        assert context.storage.db_path == config.db_path
    finally:
        context.storage.close()
