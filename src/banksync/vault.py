"""Credential vault: authenticated encryption of connection secrets at rest.

Tokens have the form ``<ivHex>.<cipherHex>.<authTagHex>``: AES-256-GCM with a
random 96-bit IV and a 128-bit authentication tag. The 256-bit key is derived
once, when the vault is constructed, from the configured master secret using
scrypt with an application-wide salt.
"""

import logging
import os
import re
from functools import lru_cache
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from banksync.config import VaultConfig, get_settings
from banksync.errors import IntegrityError, VaultConfigurationError
from banksync.metadata import (
    AmexMetadata,
    BomMetadata,
    metadata_from_json,
    metadata_to_json,
    validate_metadata,
)

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

# scrypt cost parameters (N=2^14, r=8, p=1)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

_HEX_SEGMENT = re.compile(r"^[0-9a-fA-F]*$")


def derive_key(master_secret: str, salt: str) -> bytes:
    """Derive the 256-bit vault key from a master secret.

    Args:
        master_secret: Configured master secret
        salt: Application-wide salt

    Returns:
        bytes: 32-byte AES key
    """
    kdf = Scrypt(
        salt=salt.encode("utf-8"),
        length=KEY_LENGTH,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
    )
    return kdf.derive(master_secret.encode("utf-8"))


class CredentialVault:
    """Encrypt and decrypt secrets with a key derived at construction time."""

    def __init__(self, master_secret: str | None, salt: str):
        """Derive the vault key.

        Args:
            master_secret: Master secret; required
            salt: Application-wide key derivation salt

        Raises:
            VaultConfigurationError: If no master secret is configured
        """
        if not master_secret:
            raise VaultConfigurationError(
                "No vault master secret configured. "
                "Set BANKSYNC_VAULT__MASTER_SECRET before starting BankSync."
            )
        self._aead = AESGCM(derive_key(master_secret, salt))
        logger.debug("Credential vault key derived")

    @classmethod
    def from_config(cls, config: VaultConfig) -> "CredentialVault":
        """Build a vault from the vault configuration section."""
        secret = config.master_secret.get_secret_value() if config.master_secret else None
        return cls(secret, config.kdf_salt)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string into a vault token.

        Args:
            plaintext: Secret to protect

        Returns:
            str: ``ivHex.cipherHex.authTagHex`` token
        """
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        cipher, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}.{cipher.hex()}.{tag.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a vault token.

        Args:
            token: Token produced by ``encrypt``

        Returns:
            str: The original plaintext

        Raises:
            IntegrityError: If the token is malformed, was tampered with, or
                was sealed with a different key
        """
        iv, cipher, tag = self._split_token(token)
        try:
            plaintext = self._aead.decrypt(iv, cipher + tag, None)
        except InvalidTag as e:
            raise IntegrityError("Authentication tag verification failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise IntegrityError("Decrypted payload is not valid UTF-8") from e

    @staticmethod
    def _split_token(token: str) -> tuple[bytes, bytes, bytes]:
        if not isinstance(token, str):
            raise IntegrityError("Vault token must be a string")

        segments = token.split(".")
        if len(segments) != 3:
            raise IntegrityError(
                f"Vault token must have 3 segments, found {len(segments)}"
            )

        iv_hex, cipher_hex, tag_hex = segments
        for segment in segments:
            if not _HEX_SEGMENT.match(segment) or len(segment) % 2:
                raise IntegrityError("Vault token segments must be hex encoded")

        iv = bytes.fromhex(iv_hex)
        tag = bytes.fromhex(tag_hex)
        if len(iv) != IV_LENGTH:
            raise IntegrityError(f"Vault token IV must be {IV_LENGTH} bytes")
        if len(tag) != TAG_LENGTH:
            raise IntegrityError(f"Vault token tag must be {TAG_LENGTH} bytes")

        return iv, bytes.fromhex(cipher_hex), tag

    def encrypt_metadata(self, slug: str, payload: dict[str, Any] | None) -> str | None:
        """Validate institution metadata and encrypt it.

        Args:
            slug: Institution slug the metadata belongs to
            payload: Raw metadata fields

        Returns:
            Encrypted token, or None when the institution has no metadata

        Raises:
            InvalidMetadataError: If the payload does not fit the institution
        """
        record = validate_metadata(slug, payload)
        if record is None:
            return None
        return self.encrypt(metadata_to_json(record))

    def decrypt_metadata(
        self, slug: str, token: str | None
    ) -> BomMetadata | AmexMetadata | None:
        """Decrypt and validate stored institution metadata.

        Raises:
            IntegrityError: If the token cannot be decrypted
            InvalidMetadataError: If the decrypted document is not valid
        """
        if token is None:
            return validate_metadata(slug, None)
        return metadata_from_json(slug, self.decrypt(token))


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    """Get the process-wide vault built from settings.

    Raises:
        VaultConfigurationError: If no master secret is configured
    """
    return CredentialVault.from_config(get_settings().vault)
