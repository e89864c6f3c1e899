"""
Shared pytest fixtures for the Kiss2FA test suite.

Every test gets its own temporary SQLite database and KDF parameters
small enough to keep Argon2/PBKDF2 fast.
"""
import pytest

from config import Config, build_context
from service import VaultService

FAST_KDF = dict(
    pbkdf2_iterations=1000,
    argon2_time_cost=1,
    argon2_memory_cost=64,
    argon2_parallelism=1,
)


@pytest.fixture
def config(tmp_path):
    return Config(
        db_path=str(tmp_path / "test_kiss2fa.db"),
        log_file=str(tmp_path / "test_kiss2fa.log"),
        **FAST_KDF,
    )


@pytest.fixture
def context(config):
    """AppContext with an initialized database."""
    ctx = build_context(config)
    ctx.storage.init_db()
    yield ctx
    ctx.storage.close()


@pytest.fixture
def storage(context):
    return context.storage


@pytest.fixture
def service(context):
    return VaultService(context)


@pytest.fixture
def user(service):
    """A registered user with an unlocked, empty vault."""
    created = service.register("correct horse")
    service.unlock(created.id, "correct horse")
    return created
