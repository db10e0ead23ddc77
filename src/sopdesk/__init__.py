"""sopdesk: client, service and voice tooling for SOP document stores."""

from __future__ import annotations

from .client import BackendClient, Document, SourceFile, Store
from .config import Settings
from .errors import SopDeskError
from .uploads import UploadBatchResult, UploadOrchestrator

__all__ = [
    "BackendClient",
    "Document",
    "LiveAudioSession",
    "Settings",
    "SopDeskError",
    "SourceFile",
    "Store",
    "UploadBatchResult",
    "UploadOrchestrator",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "LiveAudioSession":
        from .live import LiveAudioSession

        return LiveAudioSession
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'sopdesk' has no attribute {name}")
