"""Tests for agent_memory.crypto — encryption at rest, key management, secure DB files."""
import os
import stat

import pytest

from agent_memory.crypto import (
    _get_or_create_key,
    _key_path,
    decrypt,
    encrypt,
    is_enabled,
    memory_home,
    reset_crypto_state,
    secure_connect,
)


@pytest.fixture(autouse=True)
def _reset_crypto():
    """Reset crypto state before and after each test."""
    reset_crypto_state()
    yield
    reset_crypto_state()


# ============================================================================
# is_enabled
# ============================================================================


class TestIsEnabled:
    def test_enabled_by_default(self, monkeypatch):
        monkeypatch.delenv("AGENT_MEMORY_ENCRYPT", raising=False)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["1", "true", "yes", ""])
    def test_enabled_values(self, monkeypatch, value):
        monkeypatch.setenv("AGENT_MEMORY_ENCRYPT", value)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["0", "false", "no", " FALSE "])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv("AGENT_MEMORY_ENCRYPT", value)
        assert is_enabled() is False


# ============================================================================
# Plaintext passthrough (encryption disabled)
# ============================================================================


class TestPlaintextPassthrough:
    def test_encrypt_returns_plaintext_when_disabled(self, monkeypatch):
        monkeypatch.setenv("AGENT_MEMORY_ENCRYPT", "0")
        assert encrypt("hello world") == "hello world"

    def test_decrypt_returns_plaintext_without_prefix(self):
        assert decrypt("just plain text") == "just plain text"

    def test_no_key_created_when_disabled(self, tmp_memory_dir):
        encrypt("hello")
        assert not (tmp_memory_dir / ".key").exists()


# ============================================================================
# Key management
# ============================================================================


class TestKeyManagement:
    def test_key_created_on_first_use(self, tmp_memory_dir):
        key_path = tmp_memory_dir / ".key"
        assert not key_path.exists()
        key = _get_or_create_key()
        assert key_path.exists()
        assert len(key) > 0
        assert stat.S_IMODE(key_path.stat().st_mode) == 0o600

    def test_key_reused_on_second_call(self, tmp_memory_dir):
        key1 = _get_or_create_key()
        key2 = _get_or_create_key()
        assert key1 == key2

    def test_key_path_uses_memory_home(self, tmp_memory_dir):
        assert memory_home() == tmp_memory_dir
        assert str(tmp_memory_dir) in str(_key_path())


# ============================================================================
# Encrypt/decrypt roundtrip
# ============================================================================


class TestEncryptDecryptRoundtrip:
    @pytest.fixture(autouse=True)
    def _enable_encryption(self, tmp_memory_dir_encrypted):
        yield

    def test_roundtrip(self):
        original = "sensitive memory content"
        encrypted = encrypt(original)
        assert encrypted.startswith("ENC:")
        assert encrypted != original
        assert decrypt(encrypted) == original

    def test_roundtrip_unicode(self):
        original = "Unicode content: café ☃ \U0001f680"
        assert decrypt(encrypt(original)) == original

    def test_tampered_token_raises_value_error(self):
        encrypted = encrypt("secret")
        with pytest.raises(ValueError, match="Decryption failed"):
            decrypt(encrypted[:-4] + "AAAA")

    def test_wrong_key_raises_value_error(self, tmp_memory_dir_encrypted):
        encrypted = encrypt("secret")
        (tmp_memory_dir_encrypted / ".key").unlink()
        reset_crypto_state()
        with pytest.raises(ValueError):
            decrypt(encrypted)


# ============================================================================
# reset_crypto_state
# ============================================================================


class TestResetCryptoState:
    def test_reset_clears_state(self, tmp_memory_dir_encrypted):
        assert encrypt("test").startswith("ENC:")
        reset_crypto_state()
        assert encrypt("test2").startswith("ENC:")


# ============================================================================
# secure_connect
# ============================================================================


class TestSecureConnect:
    def test_new_file_is_private(self, tmp_path):
        path = tmp_path / "new.db"
        conn = secure_connect(path)
        conn.close()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_loose_permissions_tightened(self, tmp_path):
        path = tmp_path / "loose.db"
        path.touch()
        os.chmod(path, 0o644)
        conn = secure_connect(path)
        conn.close()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_memory_database(self):
        conn = secure_connect(":memory:")
        assert conn.execute("SELECT 1").fetchone()[0] == 1
        conn.close()
