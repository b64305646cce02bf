"""
Storage passphrase management.

The passphrase that encrypts the SQLite engine is kept in the system keyring,
never in the JSON configuration.
"""

import secrets
from typing import Optional

import keyring
from keyring.errors import PasswordDeleteError

SERVICE_NAME = "whatsapp_chat_manager"
KEY_NAME = "storage_passphrase"


def save_passphrase_to_keyring(passphrase: str) -> None:
    """
    Save the storage passphrase to the system keyring.

    Args:
        passphrase: The passphrase to save.
    """
    keyring.set_password(SERVICE_NAME, KEY_NAME, passphrase)


def get_passphrase_from_keyring() -> Optional[str]:
    """
    Retrieve the storage passphrase from the system keyring.

    Returns:
        The stored passphrase, or None if not set.
    """
    return keyring.get_password(SERVICE_NAME, KEY_NAME)


def ensure_passphrase() -> str:
    """Return the stored passphrase, generating and saving one on first use"""
    passphrase = get_passphrase_from_keyring()
    if passphrase:
        return passphrase
    passphrase = secrets.token_hex(32)
    save_passphrase_to_keyring(passphrase)
    return passphrase


def clear_passphrase() -> bool:
    """Remove the stored passphrase. Returns False if none was stored."""
    try:
        keyring.delete_password(SERVICE_NAME, KEY_NAME)
        return True
    except PasswordDeleteError:
        return False
