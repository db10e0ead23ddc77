"""Credential providers supplying the backend bearer token."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import Settings

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """Get, replace or forget the token sent as ``Authorization: Bearer``."""

    def get(self) -> str | None:  # pragma: no cover - protocol
        ...

    def set(self, token: str) -> None:  # pragma: no cover - protocol
        ...

    def clear(self) -> None:  # pragma: no cover - protocol
        ...


class MemoryCredentialProvider:
    def __init__(self, token: str | None = None) -> None:
        self._token = token or None
        self._lock = threading.Lock()

    def get(self) -> str | None:
        with self._lock:
            return self._token

    def set(self, token: str) -> None:
        with self._lock:
            self._token = token.strip() or None

    def clear(self) -> None:
        with self._lock:
            self._token = None


class FileCredentialProvider:
    """Persist the token in a file so it survives restarts of the CLI."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self) -> str | None:
        with self._lock:
            try:
                token = self._path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                return None
            return token or None

    def set(self, token: str) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(token.strip(), encoding="utf-8")
            try:
                self._path.chmod(0o600)
            except OSError:  # pragma: no cover - platform dependent
                logger.debug("credentials.chmod.skipped path=%s", self._path)

    def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)
        logger.info("credentials.cleared path=%s", self._path)


def credentials_from_settings(settings: "Settings") -> CredentialProvider:
    """Pick the provider the settings describe, seeding it with ``api_token``."""

    if settings.token_file:
        provider = FileCredentialProvider(settings.token_file)
        if settings.api_token:
            provider.set(settings.api_token)
        return provider
    return MemoryCredentialProvider(settings.api_token)


__all__ = [
    "CredentialProvider",
    "FileCredentialProvider",
    "MemoryCredentialProvider",
    "credentials_from_settings",
]
