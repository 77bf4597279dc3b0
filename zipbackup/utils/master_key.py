"""
Machine-local secret obfuscation.

Passwords in the settings file (archive, remote store, e-mail) are stored
encrypted with a Fernet key derived from this machine's identity. The key
never leaves the machine, so a settings file copied elsewhere cannot be
decoded there. This keeps secrets out of plain sight; it is not a substitute
for real secret management.
"""

import base64
import logging
import socket
import uuid
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


logger = logging.getLogger(__name__)

MACHINE_ID_FILES = ('/etc/machine-id', '/var/lib/dbus/machine-id')


def get_machine_secret() -> str:
    """
    Return a stable identifier for this machine.

    Uses the systemd/dbus machine id when available, otherwise the host name
    combined with the hardware (MAC) address.

    Returns:
        Machine identifier string
    """
    for candidate in MACHINE_ID_FILES:
        path = Path(candidate)
        if path.is_file():
            machine_id = path.read_text().strip()
            if machine_id:
                return machine_id

    return f"{socket.gethostname()}-{uuid.getnode():012x}"


class MasterKeyManager:
    """
    Handles encryption/decryption of settings secrets with a machine-local key.
    """

    def __init__(self, machine_secret: Optional[str] = None):
        """
        Initialize with a machine secret.

        Args:
            machine_secret: Secret to derive the key from (default: this machine's id)
        """
        if machine_secret is None:
            machine_secret = get_machine_secret()

        # Fixed salt, the machine secret is the only varying input
        fixed_salt = b'zipbackup_machine_key_salt_v1'

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=fixed_salt,
            iterations=100000,
        )

        key = base64.urlsafe_b64encode(kdf.derive(machine_secret.encode()))
        self._fernet = Fernet(key)

    def encode_secret(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Obfuscate a secret for storage in the settings file.

        Args:
            plaintext: Secret in plaintext (None or empty is stored as None)

        Returns:
            Base64-encoded encrypted secret, or None
        """
        if not plaintext:
            return None

        encrypted_bytes = self._fernet.encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decode_secret(self, encoded: Optional[str]) -> Optional[str]:
        """
        Recover a secret stored by encode_secret().

        A value that cannot be decrypted (settings copied from another
        machine, or hand-edited) yields None and a warning.

        Args:
            encoded: Base64-encoded encrypted secret

        Returns:
            Plaintext secret, or None
        """
        if not encoded:
            return None

        try:
            encrypted_bytes = base64.urlsafe_b64decode(encoded.encode())
            return self._fernet.decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Could not decode stored secret (was it created on another machine?): {e!r}")
            return None


_default_manager: Optional[MasterKeyManager] = None


def get_master_key_manager() -> MasterKeyManager:
    """
    Return the process-wide MasterKeyManager for this machine.

    Returns:
        MasterKeyManager instance
    """
    global _default_manager

    if _default_manager is None:
        _default_manager = MasterKeyManager()

    return _default_manager


def encode_secret(plaintext: Optional[str]) -> Optional[str]:
    """Obfuscate a secret with this machine's key."""
    return get_master_key_manager().encode_secret(plaintext)


def decode_secret(encoded: Optional[str]) -> Optional[str]:
    """Recover a secret obfuscated with this machine's key."""
    return get_master_key_manager().decode_secret(encoded)
