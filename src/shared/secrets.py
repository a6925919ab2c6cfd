"""
Secrets and keychain integration: retrieves credentials from the
system keychain and manages the encrypted identity store.

Credentials (the summarizer API key, the identity-store encryption key)
are **never** stored in the settings file.  They live in the system
keychain (``secret-tool`` / ``libsecret``) and are retrieved at runtime.

The protocol client's persisted identity (the paired device keys) is
encrypted at rest with Fernet.  At startup it is decrypted into a tmpfs
working copy; on shutdown the working copy is encrypted back, because a
fresh pairing writes a new identity.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet

logger = logging.getLogger("shared.secrets")

_KEYCHAIN_SERVICE = "wa-recap"
_ENV_PREFIX = "WA_RECAP_"


# ---------------------------------------------------------------------------
# System keychain
# ---------------------------------------------------------------------------


def get_secret(key_name: str, service: str = _KEYCHAIN_SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service wa-recap key <key_name>

    Falls back to environment variables (``WA_RECAP_<KEY_NAME>``) if
    ``secret-tool`` is not available (e.g. in development environments).

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except Exception:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = f"{_ENV_PREFIX}{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


# ---------------------------------------------------------------------------
# Identity store encryption (Fernet)
# ---------------------------------------------------------------------------


def encrypt_identity_file(source: Path, target: Path, key: str) -> None:
    """Encrypt the plaintext identity store at *source* into *target*.

    Raises:
        FileNotFoundError: If *source* does not exist.
    """
    f = Fernet(key.encode())
    ciphertext = f.encrypt(source.read_bytes())
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(ciphertext)
    target.chmod(0o600)
    logger.info("Identity store encrypted: %s", target)


def decrypt_identity_file(path: Path, key: str) -> bytes:
    """Decrypt an identity store and return the plaintext **in memory**.

    Raises:
        FileNotFoundError: If the identity file does not exist.
        cryptography.fernet.InvalidToken: If the key is wrong or the
            file has been tampered with.
    """
    f = Fernet(key.encode())
    plaintext = f.decrypt(path.read_bytes())
    logger.info("Identity store decrypted in memory: %s", path)
    return plaintext


def materialize_identity_store(path: Path, key: str) -> Path:
    """Return a private tmpfs path holding the decrypted identity store.

    When no encrypted identity exists yet, the returned path does not
    exist either; the protocol client creates it during pairing.
    """
    shm_dir: Optional[str] = "/dev/shm" if os.path.isdir("/dev/shm") else None
    work_dir = Path(tempfile.mkdtemp(prefix="wa-recap-", dir=shm_dir))
    work_dir.chmod(0o700)
    working_copy = work_dir / "identity.db"
    if path.exists():
        working_copy.write_bytes(decrypt_identity_file(path, key))
        working_copy.chmod(0o600)
    else:
        logger.info("No persisted identity at %s; pairing will be required", path)
    return working_copy


def persist_identity_store(working_copy: Path, path: Path, key: str) -> None:
    """Encrypt the working copy back to *path* and shred the plaintext."""
    try:
        if working_copy.exists():
            encrypt_identity_file(working_copy, path, key)
    finally:
        for leftover in working_copy.parent.glob(working_copy.name + "*"):
            leftover.unlink()
        try:
            working_copy.parent.rmdir()
        except OSError:
            logger.debug("Identity work dir not removed: %s", working_copy.parent)
