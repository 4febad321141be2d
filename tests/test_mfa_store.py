"""
Tests for the MFA credential store and secret encryption.

Covers:
- Encryption at rest and tamper detection
- Atomic enrollment writes
- Activation, deletion and backup-code bookkeeping
- Translation of connectivity faults to PersistenceUnavailable
"""
import pytest
from cryptography.fernet import Fernet
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from src.auth.errors import CorruptCredential, PersistenceUnavailable
from src.database.mfa_store import MFAStore
from src.security.encryption import DecryptionError, SecretEncryptor

SECRET = "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"


# ============================================
# Encryption Tests
# ============================================

class TestSecretEncryptor:
    """Test the Fernet encryption collaborator."""

    def test_decrypt_returns_plaintext(self, encryption_key):
        encryptor = SecretEncryptor(encryption_key)
        assert encryptor.decrypt(encryptor.encrypt(SECRET)) == SECRET

    def test_ciphertext_hides_secret(self, encryption_key):
        assert SECRET not in SecretEncryptor(encryption_key).encrypt(SECRET)

    def test_tampered_ciphertext_raises(self, encryption_key):
        encryptor = SecretEncryptor(encryption_key)
        token = encryptor.encrypt(SECRET)
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(DecryptionError):
            encryptor.decrypt(tampered)

    def test_wrong_key_raises(self, encryption_key):
        token = SecretEncryptor(encryption_key).encrypt(SECRET)

        with pytest.raises(DecryptionError):
            SecretEncryptor(Fernet.generate_key().decode()).decrypt(token)

    def test_missing_key_rejected(self):
        with pytest.raises(ValueError):
            SecretEncryptor("")


# ============================================
# Credential Tests
# ============================================

class TestCredentials:
    """Test credential persistence."""

    def test_enrollment_is_pending(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1", "h2"], clock())

        credential = store.get_credential("user-1")

        assert credential.enabled is False
        assert credential.created_at == clock()
        assert credential.last_verified_at is None
        assert store.count_unused_backup_codes("user-1") == 2

    def test_secret_encrypted_at_rest(self, store, clock):
        store.save_enrollment("user-1", SECRET, [], clock())

        with store.get_session() as session:
            raw = session.execute(
                text("SELECT secret_encrypted FROM mfa_credentials WHERE user_id = :uid"),
                {"uid": "user-1"},
            ).scalar()

        assert SECRET not in raw
        assert store.reveal_secret(store.get_credential("user-1")) == SECRET

    def test_undecryptable_secret_is_corrupt(self, tmp_path, store, clock):
        store.save_enrollment("user-1", SECRET, [], clock())
        other_key = MFAStore(
            f"sqlite:///{tmp_path / 'mfa.db'}",
            encryptor=SecretEncryptor(Fernet.generate_key().decode()),
        )

        with pytest.raises(CorruptCredential):
            other_key.reveal_secret(other_key.get_credential("user-1"))
        other_key.engine.dispose()

    def test_mark_verified_activates_once(self, store, clock):
        store.save_enrollment("user-1", SECRET, [], clock())

        assert store.mark_verified("user-1", clock()) is True
        assert store.mark_verified("user-1", clock()) is False

        credential = store.get_credential("user-1")
        assert credential.enabled is True
        assert credential.last_verified_at == clock()

    def test_re_enrollment_replaces_credential(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1"], clock())
        store.mark_verified("user-1", clock())

        store.save_enrollment("user-1", "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ", ["h2", "h3"], clock())

        credential = store.get_credential("user-1")
        assert credential.enabled is False
        assert store.reveal_secret(credential) == "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert store.count_unused_backup_codes("user-1") == 2

    def test_failed_enrollment_writes_nothing(self, store, clock):
        with pytest.raises(IntegrityError):
            store.save_enrollment("user-1", SECRET, ["h1", None], clock())

        assert store.get_credential("user-1") is None
        assert store.count_unused_backup_codes("user-1") == 0

    def test_failed_re_enrollment_keeps_previous(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1"], clock())

        with pytest.raises(IntegrityError):
            store.save_enrollment("user-1", "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ", [None], clock())

        assert store.reveal_secret(store.get_credential("user-1")) == SECRET
        assert store.count_unused_backup_codes("user-1") == 1

    def test_delete_credential(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1"], clock())

        assert store.delete_credential("user-1") is True
        assert store.get_credential("user-1") is None
        assert store.count_unused_backup_codes("user-1") == 0
        assert store.delete_credential("user-1") is False


# ============================================
# Backup Code Row Tests
# ============================================

class TestBackupCodeRows:
    """Test single-use bookkeeping."""

    def test_consume_only_once(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1", "h2"], clock())
        code = store.get_unused_backup_codes("user-1")[0]

        assert store.consume_backup_code("user-1", code.code_id, clock()) is True
        assert store.consume_backup_code("user-1", code.code_id, clock()) is False
        assert store.count_unused_backup_codes("user-1") == 1

    def test_consume_stamps_last_verified(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1"], clock())
        code = store.get_unused_backup_codes("user-1")[0]
        clock.advance(minutes=5)

        store.consume_backup_code("user-1", code.code_id, clock())

        assert store.get_credential("user-1").last_verified_at == clock()

    def test_consume_other_users_code_rejected(self, store, clock):
        store.save_enrollment("user-1", SECRET, ["h1"], clock())
        store.save_enrollment("user-2", SECRET, ["h2"], clock())
        code = store.get_unused_backup_codes("user-1")[0]

        assert store.consume_backup_code("user-2", code.code_id, clock()) is False
        assert store.count_unused_backup_codes("user-1") == 1
        assert store.get_credential("user-2").last_verified_at is None

    def test_replace_requires_credential(self, store, clock):
        with pytest.raises(LookupError):
            store.replace_backup_codes("nobody", ["h1"], clock())


# ============================================
# Availability Tests
# ============================================

class TestUnavailableStore:
    """Test that connectivity faults are not mistaken for 'not found'."""

    @pytest.fixture
    def unreachable(self, tmp_path, encryption_key):
        path = tmp_path / "missing" / "dir" / "mfa.db"
        broken = MFAStore(f"sqlite:///{path}", encryptor=SecretEncryptor(encryption_key), timeout_seconds=1)
        yield broken
        broken.engine.dispose()

    def test_init_schema_raises(self, unreachable):
        with pytest.raises(PersistenceUnavailable):
            unreachable.init_schema()

    def test_get_credential_raises(self, unreachable):
        with pytest.raises(PersistenceUnavailable) as exc_info:
            unreachable.get_credential("user-1")
        assert exc_info.value.retryable is True

    def test_ping_raises(self, unreachable):
        with pytest.raises(PersistenceUnavailable):
            unreachable.ping()

    def test_ping_healthy(self, store):
        store.ping()
