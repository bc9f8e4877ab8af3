"""
Session Record Encryption.

Encrypts stored values with AES-256-GCM so a copied storage file does
not leak tokens.

Security model
--------------
- The key is derived at runtime from machine identity (hostname + OS
  username) via PBKDF2-HMAC-SHA256 with a per-installation random salt.
  The key is **never** persisted.
- AES-256-GCM provides confidentiality and integrity.  A value that fails
  authentication (corrupted, or written on another machine / account) is
  reported as undecryptable and treated by the storage as absent.
"""

from __future__ import annotations

import getpass
import os
import platform
import socket
import stat
import subprocess
import threading
from pathlib import Path
from typing import NamedTuple, Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from sessionkit.logger import StructuredLogger


class EncryptedValue(NamedTuple):
    """Ciphertext with the GCM nonce and tag needed to open it."""

    ciphertext: bytes
    nonce: bytes
    tag: bytes


class DecryptionError(ValueError):
    """A stored value could not be authenticated or decrypted."""


class SessionCipher:
    """AES-256-GCM cipher keyed from machine identity.

    The key is derived lazily on first use and cached on the instance,
    so the PBKDF2 cost is paid once per process.

    Parameters
    ----------
    salt_path:
        File holding the 32-byte per-installation salt.  Created on first
        use with owner-only permissions.
    logger:
        Structured logger.
    iterations:
        PBKDF2 iteration count.

    Raises
    ------
    OSError
        From ``encrypt``/``decrypt`` when the salt file cannot be read or
        created.  Encryption is refused rather than degraded to a static
        salt.
    """

    DEFAULT_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        salt_path: Path,
        logger: StructuredLogger,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> None:
        self._salt_path: Path = salt_path
        self._logger: StructuredLogger = logger
        self._iterations: int = iterations
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> EncryptedValue:
        cipher = AES.new(self._get_key(), AES.MODE_GCM)  # type: ignore[attr-defined]
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return EncryptedValue(ciphertext=ciphertext, nonce=cipher.nonce, tag=tag)

    def decrypt(self, value: EncryptedValue) -> str:
        """Open *value*.

        Raises
        ------
        DecryptionError
            If authentication fails or the plaintext is not UTF-8.
        """
        cipher = AES.new(self._get_key(), AES.MODE_GCM, nonce=value.nonce)  # type: ignore[attr-defined]
        try:
            plaintext: bytes = cipher.decrypt_and_verify(value.ciphertext, value.tag)
            return plaintext.decode("utf-8")
        except (ValueError, KeyError) as exc:
            raise DecryptionError(
                "Stored value failed authentication (corrupted data or "
                "machine identity changed)."
            ) from exc

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _get_key(self) -> bytes:
        with self._key_lock:
            if self._key is None:
                self._key = self._derive_key()
            return self._key

    def _derive_key(self) -> bytes:
        """Derive a 256-bit AES key from machine identity.

        ``hostname:username`` binds the key to this machine and OS
        account; the random salt supplies the entropy.  The key protects
        stored tokens against casual disk access, not against an attacker
        who already controls the OS account.
        """
        password: str = f"{socket.gethostname()}:{getpass.getuser()}"
        salt: bytes = self._get_or_create_salt()
        return PBKDF2(
            password=password,
            salt=salt,
            dkLen=self._KEY_LENGTH,
            count=self._iterations,
            hmac_hash_module=SHA256,
        )

    def _get_or_create_salt(self) -> bytes:
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.",
                len(data),
            )

        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)

        if platform.system() == "Windows":
            self._restrict_windows_acl(self._salt_path)
        else:
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Session salt created at %s.", self._salt_path)
        return salt

    def _restrict_windows_acl(self, file_path: Path) -> None:
        """Restrict *file_path* to the current user via ``icacls``.

        The Windows equivalent of ``chmod 0o600``.  Failure is logged and
        the salt stays usable.
        """
        try:
            result = subprocess.run(
                [
                    "icacls",
                    str(file_path),
                    "/inheritance:r",
                    "/grant:r",
                    f"{getpass.getuser()}:F",
                ],
                capture_output=True,
                check=False,
                timeout=10,
            )
            if result.returncode != 0:
                self._logger.warning(
                    "icacls returned exit code %d for '%s': %s",
                    result.returncode,
                    file_path,
                    result.stderr.decode("utf-8", errors="replace").strip(),
                )
        except (OSError, subprocess.SubprocessError) as exc:
            self._logger.warning(
                "Failed to set Windows ACLs on '%s': %s", file_path, exc,
            )
