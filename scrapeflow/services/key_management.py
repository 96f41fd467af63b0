from typing import Protocol


class KeyManager(Protocol):
    def encryption_key_ref(self) -> str: ...


class StaticKeyManager:
    """Hands out a configured KMS key name. Key material never leaves the KMS."""

    def __init__(self, key_name: str):
        self._key_name = key_name

    def encryption_key_ref(self) -> str:
        return self._key_name
