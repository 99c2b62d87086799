"""
Encryption at rest for exported memory backups, plus secure DB file creation.

Exports are encrypted with Fernet (AES-128-CBC + HMAC-SHA256). The key lives
at <AGENT_MEMORY_HOME>/.key and is created on first use with 0600
permissions. Losing it means losing access to encrypted backups.

Enabled by default. Disable: AGENT_MEMORY_ENCRYPT=0
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("agent_memory.crypto")

ENCRYPTED_PREFIX = "ENC:"

_fernet_instance = None


def memory_home() -> Path:
    """Resolve AGENT_MEMORY_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("AGENT_MEMORY_HOME", str(Path.home() / ".agent-memory")))


def _key_path() -> Path:
    return memory_home() / ".key"


def is_enabled() -> bool:
    """Encryption is on unless AGENT_MEMORY_ENCRYPT is 0/false/no."""
    val = os.environ.get("AGENT_MEMORY_ENCRYPT", "").strip().lower()
    if val in ("0", "false", "no"):
        return False
    return True


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    """Get the Fernet key, creating one if it doesn't exist."""
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A 32-byte raw secret is wrapped; anything else is already a Fernet key
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    home = memory_home()
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet() -> Fernet:
    global _fernet_instance
    if _fernet_instance is None:
        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt(plaintext: str) -> str:
    """Encrypt a string. Returns plaintext unchanged when encryption is disabled."""
    if not is_enabled():
        return plaintext
    token = _get_fernet().encrypt(plaintext.encode("utf-8"))
    return ENCRYPTED_PREFIX + token.decode("ascii")


def decrypt(data: str) -> str:
    """Decrypt a string. Input without the ``ENC:`` prefix is returned as-is.

    Raises ValueError if decryption fails (wrong key or corrupted data).
    """
    if not data.startswith(ENCRYPTED_PREFIX):
        return data
    try:
        token = data[len(ENCRYPTED_PREFIX):].encode("ascii")
        return _get_fernet().decrypt(token).decode("utf-8")
    except (InvalidToken, UnicodeError) as e:
        raise ValueError(f"Decryption failed: {e!r}") from e


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection, creating the file with 0600 permissions.

    Existing files with group/other permission bits are tightened.
    """
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if db_path_str != ":memory:":
        if not path_obj.exists():
            fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
            os.close(fd)
        else:
            current_mode = path_obj.stat().st_mode
            if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
                os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
