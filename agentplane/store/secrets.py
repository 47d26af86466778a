"""SecretBox: seals worker API keys, provider keys and tool-server env.

The key lives next to the database (``.encryption-key``, mode 0600) so that
sealed values survive restarts.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from agentplane.exceptions import StoreError

_logger = logging.getLogger(__name__)

_KEY_FILENAME = ".encryption-key"


class SecretBox:
    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def generate(cls) -> SecretBox:
        return cls(Fernet.generate_key())

    @classmethod
    def from_data_dir(cls, data_dir: Path) -> SecretBox:
        """Load the persisted key, creating it on first use."""
        path = data_dir / _KEY_FILENAME
        if path.exists():
            return cls(path.read_bytes().strip())

        data_dir.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        _logger.info("Created encryption key at %s", path)
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise StoreError("Stored secret cannot be decrypted with the current key") from e
