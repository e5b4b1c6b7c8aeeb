from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

KEYRING_SERVICE_NAME = "aurora-session"
_FILE_FORMAT_VERSION = 1


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...


@dataclass(slots=True)
class InMemorySecretStore:
    items: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        return self.items.get(key)

    def set(self, key: str, value: str) -> None:
        self.items[key] = value

    def delete(self, key: str) -> None:
        self.items.pop(key, None)


@dataclass(slots=True)
class KeyringSecretStore:
    """OS credential vault (Keychain, Credential Manager, Secret Service)."""

    service_name: str = KEYRING_SERVICE_NAME

    @staticmethod
    def _backend() -> Any:
        try:
            import keyring  # type: ignore
        except ModuleNotFoundError as exc:
            raise ModuleNotFoundError(
                "keyring is required for KeyringSecretStore; install with `pip install keyring`"
            ) from exc
        return keyring

    def get(self, key: str) -> str | None:
        return self._backend().get_password(self.service_name, key)

    def set(self, key: str, value: str) -> None:
        self._backend().set_password(self.service_name, key, value)

    def delete(self, key: str) -> None:
        keyring = self._backend()
        try:
            keyring.delete_password(self.service_name, key)
        except keyring.errors.PasswordDeleteError:
            logger.debug(f"[Secrets] Nothing stored for {key!r}")


class EncryptedFileSecretStore:
    """JSON file of Fernet tokens keyed by name; the key is derived with scrypt."""

    def __init__(self, path: Path, *, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("passphrase must be non-empty")
        self.path = path
        document = self._read_or_create()
        salt = base64.b64decode(document["salt"])
        self._fernet = Fernet(derive_fernet_key(passphrase, salt))
        self._tokens: dict[str, str] = dict(document.get("items", {}))

    def _read_or_create(self) -> dict[str, Any]:
        if self.path.exists():
            document = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(document, dict) or "salt" not in document:
                raise ValueError(f"{self.path} is not a secrets file")
            return document
        document = {
            "version": _FILE_FORMAT_VERSION,
            "salt": base64.b64encode(os.urandom(16)).decode("ascii"),
            "items": {},
        }
        _write_json_atomically(self.path, document)
        return document

    def get(self, key: str) -> str | None:
        token = self._tokens.get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("invalid passphrase or corrupted secrets file") from exc

    def set(self, key: str, value: str) -> None:
        self._tokens[key] = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        self._flush()

    def delete(self, key: str) -> None:
        if self._tokens.pop(key, None) is not None:
            self._flush()

    def _flush(self) -> None:
        document = json.loads(self.path.read_text(encoding="utf-8"))
        document["items"] = self._tokens
        _write_json_atomically(self.path, document)


def derive_fernet_key(passphrase: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


def mask_secret(value: str, *, unmasked_prefix: int = 3) -> str:
    if not value:
        return value
    if len(value) <= unmasked_prefix:
        return "*" * len(value)
    return value[:unmasked_prefix] + "****"


def _write_json_atomically(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)
