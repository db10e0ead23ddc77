from __future__ import annotations

import stat

from sopdesk.config import Settings
from sopdesk.credentials import (
    FileCredentialProvider,
    MemoryCredentialProvider,
    credentials_from_settings,
)


def test_memory_provider_set_and_clear() -> None:
    provider = MemoryCredentialProvider("abc")

    assert provider.get() == "abc"
    provider.set("  next  ")
    assert provider.get() == "next"
    provider.clear()
    assert provider.get() is None


def test_file_provider_persists_token_privately(tmp_path) -> None:
    path = tmp_path / "nested" / "token"
    provider = FileCredentialProvider(path)

    assert provider.get() is None
    provider.set("file-token\n")

    assert FileCredentialProvider(path).get() == "file-token"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_file_provider_clear_is_idempotent(tmp_path) -> None:
    provider = FileCredentialProvider(tmp_path / "token")
    provider.set("x")

    provider.clear()
    provider.clear()

    assert provider.get() is None
    assert not provider.path.exists()


def test_credentials_from_settings_selects_provider(tmp_path) -> None:
    memory = credentials_from_settings(Settings(api_token="env-token"))
    persisted = credentials_from_settings(Settings(api_token="seed", token_file=str(tmp_path / "tok")))

    assert isinstance(memory, MemoryCredentialProvider)
    assert memory.get() == "env-token"
    assert isinstance(persisted, FileCredentialProvider)
    assert persisted.get() == "seed"
