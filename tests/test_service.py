"""
Tests for the vault service: accounts, sessions, entries, folders,
password changes and export/import.
"""
import dataclasses

import pytest

from config import build_context
from errors import (
    AtomicityViolation,
    AuthenticationError,
    DecryptionError,
    FolderCycleError,
    InvalidSecretError,
    NotFoundError,
    UnsupportedFormatError,
    VaultError,
    VaultLockedError,
)
from models import ExportedVault, TOTPEntry
from service import VaultService

PASSWORD = "correct horse"
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


def fail_vault_updates(storage):
    storage.connect().execute("""
        CREATE TRIGGER fail_vault_update BEFORE UPDATE ON vaults
        BEGIN
            SELECT RAISE(ABORT, 'injected failure');
        END
    """)


@pytest.fixture
def other_service(config):
    """Build a second service on the same database with different settings."""
    contexts = []

    def build(**changes):
        ctx = build_context(dataclasses.replace(config, **changes))
        contexts.append(ctx)
        return VaultService(ctx)

    yield build
    for ctx in contexts:
        ctx.storage.close()


# ── Accounts ────────────────────────────────────────────────────────


def test_register_creates_user_with_empty_vault(service):
    user = service.register(PASSWORD)
    assert len(user.login_id) == 8
    assert service.vault_exists(user.id)

    document = service.unlock(user.id, PASSWORD)
    assert document.entries == []
    assert document.folders == []


def test_register_rejects_short_password(service):
    with pytest.raises(ValueError):
        service.register("12345")


def test_login(service, user):
    assert service.login(user.login_id, PASSWORD).id == user.id
    assert service.get_document(user.id).entries == []


@pytest.mark.parametrize("login_id,password", [
    (None, "wrong password"),
    ("nobody00", PASSWORD),
])
def test_login_failures(service, user, login_id, password):
    with pytest.raises(AuthenticationError):
        service.login(login_id or user.login_id, password)


def test_unlock_with_wrong_password(service, user):
    with pytest.raises(DecryptionError):
        service.unlock(user.id, "wrong password")


def test_update_profile(service, user):
    assert service.update_profile(user.id, name="Work")
    assert service.storage.get_user(user.id).name == "Work"


def test_delete_account(service, user):
    with pytest.raises(AuthenticationError):
        service.delete_account(user.id, "wrong password")

    service.delete_account(user.id, PASSWORD)
    assert service.storage.get_user(user.id) is None
    assert not service.vault_exists(user.id)
    with pytest.raises(VaultLockedError):
        service.get_document(user.id)


# ── Sessions ────────────────────────────────────────────────────────


def test_locked_vault_rejects_operations(service, user):
    service.lock(user.id)
    with pytest.raises(VaultLockedError):
        service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)
    with pytest.raises(VaultLockedError):
        service.codes(user.id)


def test_changes_persist_across_lock_and_unlock(service, user):
    entry = service.add_entry(user.id, name="GitHub", secret="gezd gnbv gy3t qojq gezd gnbv gy3t qojq")
    assert entry.secret == RFC_SECRET

    service.lock(user.id)
    document = service.unlock(user.id, PASSWORD)
    assert [(e.name, e.secret) for e in document.entries] == [("GitHub", RFC_SECRET)]


def test_failed_save_restores_session_document(service, user):
    service.add_entry(user.id, name="Kept", secret=RFC_SECRET)
    fail_vault_updates(service.storage)

    with pytest.raises(VaultError):
        service.add_entry(user.id, name="Lost", secret=RFC_SECRET)

    assert [e.name for e in service.get_document(user.id).entries] == ["Kept"]


def test_unlock_upgrades_vault_scheme(service, user, other_service):
    service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)
    assert service.cipher.scheme_of(service.storage.get_vault(user.id)) == "legacy"

    hardened = other_service(vault_kdf="pbkdf2")
    document = hardened.unlock(user.id, PASSWORD)

    assert [e.name for e in document.entries] == ["GitHub"]
    assert hardened.cipher.scheme_of(hardened.storage.get_vault(user.id)) == "pbkdf2"


def test_unlock_keeps_legacy_vault_when_upgrade_write_fails(service, user, other_service, caplog):
    service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)
    hardened = other_service(vault_kdf="pbkdf2")
    fail_vault_updates(hardened.storage)

    document = hardened.unlock(user.id, PASSWORD)

    assert [e.name for e in document.entries] == ["GitHub"]
    assert hardened.cipher.scheme_of(hardened.storage.get_vault(user.id)) == "legacy"
    assert "Could not re-encrypt" in caplog.text


def test_login_upgrades_legacy_hash(service, user, other_service):
    upgraded = other_service(login_hash="argon2")
    upgraded.login(user.login_id, PASSWORD)

    stored = upgraded.storage.get_user(user.id).password_hash
    assert stored.startswith("$argon2id$")
    assert upgraded.authenticate(user.login_id, PASSWORD).id == user.id


# ── Entries and folders ─────────────────────────────────────────────


def test_add_entry_from_uri(service, user):
    entry = service.add_entry(
        user.id,
        uri="otpauth://totp/ACME:alice?secret=JBSWY3DPEHPK3PXP&issuer=ACME&period=60&digits=8",
    )
    assert entry.name == "ACME (alice)"
    assert entry.secret == "JBSWY3DPEHPK3PXP"
    assert entry.period == 60
    assert entry.digits == 8


def test_add_entry_from_uri_with_unsupported_algorithm(service, user):
    with pytest.raises(ValueError):
        service.add_entry(user.id, uri="otpauth://totp/alice?secret=JBSWY3DPEHPK3PXP&algorithm=SHA256")
    assert service.get_document(user.id).entries == []


@pytest.mark.parametrize("secret", ["", "not-base32!", "ABC1"])
def test_add_entry_invalid_secret(service, user, secret):
    with pytest.raises(InvalidSecretError):
        service.add_entry(user.id, name="Bad", secret=secret)


def test_add_entry_requires_name(service, user):
    with pytest.raises(ValueError):
        service.add_entry(user.id, name="   ", secret=RFC_SECRET)


def test_entry_update_move_delete(service, user):
    folder = service.add_folder(user.id, "Work")
    entry = service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)

    service.update_entry(user.id, entry.id, name="GitHub (work)")
    service.move_entry(user.id, entry.id, folder.id)

    service.lock(user.id)
    document = service.unlock(user.id, PASSWORD)
    stored = document.get_entry(entry.id)
    assert stored.name == "GitHub (work)"
    assert stored.folder_id == folder.id

    service.delete_entry(user.id, entry.id)
    with pytest.raises(NotFoundError):
        service.get_document(user.id).get_entry(entry.id)


def test_folder_operations(service, user):
    parent = service.add_folder(user.id, "Parent")
    child = service.add_folder(user.id, "Child", parent_id=parent.id)
    entry = service.add_entry(user.id, name="Inside", secret=RFC_SECRET, folder_id=parent.id)

    service.update_folder(user.id, parent.id, is_expanded=False)
    with pytest.raises(FolderCycleError):
        service.move_folder(user.id, parent.id, child.id)

    service.delete_folder(user.id, parent.id)

    service.lock(user.id)
    document = service.unlock(user.id, PASSWORD)
    assert [f.id for f in document.folders] == [child.id]
    assert document.folders[0].parent_id is None
    assert document.get_entry(entry.id).folder_id is None


def test_add_folder_requires_name(service, user):
    with pytest.raises(ValueError):
        service.add_folder(user.id, "")


# ── Codes ───────────────────────────────────────────────────────────


def test_codes(service, user):
    entry = service.add_entry(user.id, name="RFC", secret=RFC_SECRET)

    codes = service.codes(user.id, timestamp=59000)
    assert codes == [{
        'id': entry.id,
        'name': "RFC",
        'code': "287082",
        'expires': 60000,
        'remaining': 1,
    }]


def test_codes_show_placeholder_for_broken_secret(service, user):
    service.get_document(user.id).entries.append(
        TOTPEntry(id="broken", name="Broken", secret="1NVALID")
    )
    assert service.codes(user.id, timestamp=0)[0]['code'] == "------"


@pytest.mark.parametrize("changes", [{"period": -30}, {"digits": "six"}, {"period": 0}])
def test_add_entry_rejects_bad_period_or_digits(service, user, changes):
    with pytest.raises(ValueError):
        service.add_entry(user.id, name="Bad", secret=RFC_SECRET, **changes)
    assert service.get_document(user.id).entries == []


@pytest.mark.parametrize("changes", [{"period": -30}, {"digits": "six"}])
def test_update_entry_rejects_bad_period_or_digits(service, user, changes):
    entry = service.add_entry(user.id, name="Keep", secret=RFC_SECRET)
    with pytest.raises(ValueError):
        service.update_entry(user.id, entry.id, **changes)
    assert service.get_document(user.id).get_entry(entry.id) == entry


def test_codes_survive_entry_with_bad_period(service, user):
    good = service.add_entry(user.id, name="RFC", secret=RFC_SECRET)
    service.get_document(user.id).entries.append(
        TOTPEntry(id="bad", name="Bad", secret=RFC_SECRET, period=-30, digits="six")
    )

    codes = {item['id']: item for item in service.codes(user.id, timestamp=59000)}
    assert codes[good.id]['code'] == "287082"
    assert codes["bad"]['code'] == "------"
    assert codes["bad"]['expires'] == 60000
    assert codes["bad"]['remaining'] == 1


# ── Password change ─────────────────────────────────────────────────


def test_change_password(service, user):
    service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)

    service.change_password(user.id, PASSWORD, "battery staple")

    with pytest.raises(AuthenticationError):
        service.authenticate(user.login_id, PASSWORD)
    with pytest.raises(DecryptionError):
        service.cipher.decrypt(service.storage.get_vault(user.id), PASSWORD)

    # The session keeps working with the new password.
    service.add_entry(user.id, name="GitLab", secret=RFC_SECRET)
    service.lock(user.id)
    service.login(user.login_id, "battery staple")
    assert [e.name for e in service.get_document(user.id).entries] == ["GitHub", "GitLab"]


def test_change_password_checks_current_password(service, user):
    with pytest.raises(AuthenticationError):
        service.change_password(user.id, "wrong password", "battery staple")


def test_change_password_rejects_weak_password(service, user):
    with pytest.raises(ValueError):
        service.change_password(user.id, PASSWORD, "123")


def test_change_password_failure_keeps_old_credentials(service, user):
    service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)
    fail_vault_updates(service.storage)

    with pytest.raises(AtomicityViolation):
        service.change_password(user.id, PASSWORD, "battery staple")

    assert service.authenticate(user.login_id, PASSWORD).id == user.id
    payload = service.cipher.decrypt(service.storage.get_vault(user.id), PASSWORD)
    assert payload['entries'][0]['name'] == "GitHub"


# ── Export / import ─────────────────────────────────────────────────


def test_export_and_import_into_another_account(service, user):
    service.add_entry(user.id, name="GitHub", secret=RFC_SECRET)
    exported = service.export_vault(user.id, PASSWORD)
    assert exported.format == "Kiss2FA-Vault-v1"
    assert exported.timestamp.endswith("Z")

    other = service.register("other password")
    service.unlock(other.id, "other password")
    document = service.import_vault(other.id, ExportedVault.from_json(exported.to_json()), PASSWORD)
    assert [e.name for e in document.entries] == ["GitHub"]

    # Stored under the importing account's password.
    service.lock(other.id)
    assert [e.name for e in service.unlock(other.id, "other password").entries] == ["GitHub"]


def test_export_requires_correct_password(service, user):
    with pytest.raises(DecryptionError):
        service.export_vault(user.id, "wrong password")


def test_export_without_vault(service, user):
    service.storage.connect().execute("DELETE FROM vaults WHERE user_id = ?", (user.id,))
    with pytest.raises(NotFoundError):
        service.export_vault(user.id, PASSWORD)


def test_import_legacy_entries_only_vault(service, user):
    blob = service.cipher.encrypt(
        [{"id": "1", "name": "Old", "secret": RFC_SECRET, "icon": "🔐", "period": 30, "digits": 6}],
        "export password",
    )
    exported = ExportedVault(data=blob, timestamp="2024-01-01T00:00:00.000Z", format="xVault-Vault-v1")

    document = service.import_vault(user.id, exported, "export password")
    assert [e.name for e in document.entries] == ["Old"]
    assert document.folders == []


def test_import_unsupported_format(service, user):
    exported = ExportedVault(data="U2FsdGVkX1", timestamp="", format="Other-v9")
    with pytest.raises(UnsupportedFormatError):
        service.import_vault(user.id, exported, PASSWORD)


def test_import_with_wrong_password_keeps_current_vault(service, user):
    service.add_entry(user.id, name="Current", secret=RFC_SECRET)
    exported = service.export_vault(user.id, PASSWORD)
    service.delete_entry(user.id, service.get_document(user.id).entries[0].id)

    with pytest.raises(DecryptionError):
        service.import_vault(user.id, exported, "wrong password")
    assert service.get_document(user.id).entries == []


def test_import_requires_unlocked_vault(service, user):
    exported = service.export_vault(user.id, PASSWORD)
    service.lock(user.id)
    with pytest.raises(VaultLockedError):
        service.import_vault(user.id, exported, PASSWORD)
