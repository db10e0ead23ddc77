"""Configuration helpers for the sopdesk client and service."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any, Final

from dotenv import load_dotenv

from .observability import MetricsRecorder

load_dotenv()

_DEFAULT_API_BASE_URL: Final[str] = "http://localhost:3001"
_DEFAULT_API_TIMEOUT: Final[float] = 300.0
_DEFAULT_UPLOAD_TIMEOUT: Final[float] = 600.0
_DEFAULT_HEALTH_TIMEOUT: Final[float] = 5.0
_DEFAULT_POLL_INTERVAL: Final[float] = 3.0
_DEFAULT_POLL_MAX_ATTEMPTS: Final[int] = 20
_DEFAULT_STORE_CREATION_WEIGHT: Final[int] = 5
_DEFAULT_PROGRESS_TOTAL: Final[int] = 100
_DEFAULT_SESSION_STORE_PREFIX: Final[str] = "chat-session"
_DEFAULT_LANGUAGE: Final[str] = "en"
_DEFAULT_LIVE_URL: Final[str] = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
_DEFAULT_LIVE_MODEL: Final[str] = "models/gemini-2.5-flash-native-audio-preview-09-2025"
_DEFAULT_LIVE_VOICE: Final[str] = "Zephyr"
_DEFAULT_LIVE_SYSTEM_INSTRUCTION: Final[str] = (
    "You are a helpful assistant for manufacturing Standard Operating Procedures. "
    "Answer questions clearly and concisely, and keep spoken answers short."
)
_DEFAULT_INPUT_SAMPLE_RATE: Final[int] = 16000
_DEFAULT_OUTPUT_SAMPLE_RATE: Final[int] = 24000
_DEFAULT_CAPTURE_FRAME_SIZE: Final[int] = 4096


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    msg = f"Environment variable {name} must be a boolean value (true/false)."
    raise ValueError(msg)


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float") from exc


def _env_float(name: str, default: float) -> float:
    """Read a float environment variable with a fallback (preserving zero)."""

    value = _env_optional_float(name)
    return default if value is None else value


def _env_bool(name: str, default: bool) -> bool:
    value = _env_optional_bool(name)
    if value is None:
        return default
    return value


def _env_optional_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


@dataclass(slots=True)
class Settings:
    """Runtime settings loaded from environment variables."""

    api_base_url: str = _DEFAULT_API_BASE_URL
    api_timeout: float = _DEFAULT_API_TIMEOUT
    upload_timeout: float = _DEFAULT_UPLOAD_TIMEOUT
    health_timeout: float = _DEFAULT_HEALTH_TIMEOUT
    api_token: str | None = None
    token_file: str | None = None
    poll_interval: float = _DEFAULT_POLL_INTERVAL
    poll_max_attempts: int = _DEFAULT_POLL_MAX_ATTEMPTS
    store_creation_weight: int = _DEFAULT_STORE_CREATION_WEIGHT
    progress_total: int = _DEFAULT_PROGRESS_TOTAL
    session_store_prefix: str = _DEFAULT_SESSION_STORE_PREFIX
    default_language: str = _DEFAULT_LANGUAGE
    live_url: str = _DEFAULT_LIVE_URL
    live_api_key: str | None = None
    live_model: str = _DEFAULT_LIVE_MODEL
    live_voice: str = _DEFAULT_LIVE_VOICE
    live_system_instruction: str = _DEFAULT_LIVE_SYSTEM_INSTRUCTION
    input_sample_rate: int = _DEFAULT_INPUT_SAMPLE_RATE
    output_sample_rate: int = _DEFAULT_OUTPUT_SAMPLE_RATE
    capture_frame_size: int = _DEFAULT_CAPTURE_FRAME_SIZE
    observability_metrics_enabled: bool = True
    observability_namespace: str = "sopdesk"
    observability_prometheus_enabled: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings by reading environment variables."""

        metrics_enabled = _env_optional_bool("OBSERVABILITY_METRICS_ENABLED")
        base_url = os.getenv("SOPDESK_API_BASE_URL", _DEFAULT_API_BASE_URL).strip()

        return cls(
            api_base_url=base_url.rstrip("/") or _DEFAULT_API_BASE_URL,
            api_timeout=_env_float("SOPDESK_API_TIMEOUT", _DEFAULT_API_TIMEOUT),
            upload_timeout=_env_float("SOPDESK_UPLOAD_TIMEOUT", _DEFAULT_UPLOAD_TIMEOUT),
            health_timeout=_env_float("SOPDESK_HEALTH_TIMEOUT", _DEFAULT_HEALTH_TIMEOUT),
            api_token=_env_optional_str("SOPDESK_API_TOKEN"),
            token_file=_env_optional_str("SOPDESK_TOKEN_FILE"),
            poll_interval=max(0.0, _env_float("SOPDESK_POLL_INTERVAL", _DEFAULT_POLL_INTERVAL)),
            poll_max_attempts=max(
                1,
                _env_optional_int("SOPDESK_POLL_MAX_ATTEMPTS") or _DEFAULT_POLL_MAX_ATTEMPTS,
            ),
            default_language=os.getenv("SOPDESK_LANGUAGE", _DEFAULT_LANGUAGE),
            live_url=os.getenv("SOPDESK_LIVE_URL", _DEFAULT_LIVE_URL),
            live_api_key=_env_optional_str("SOPDESK_LIVE_API_KEY"),
            live_model=os.getenv("SOPDESK_LIVE_MODEL", _DEFAULT_LIVE_MODEL),
            live_voice=os.getenv("SOPDESK_LIVE_VOICE", _DEFAULT_LIVE_VOICE),
            live_system_instruction=os.getenv(
                "SOPDESK_LIVE_SYSTEM_INSTRUCTION", _DEFAULT_LIVE_SYSTEM_INSTRUCTION
            ),
            observability_metrics_enabled=metrics_enabled if metrics_enabled is not None else True,
            observability_namespace=os.getenv("OBSERVABILITY_NAMESPACE", "sopdesk"),
            observability_prometheus_enabled=_env_bool("OBSERVABILITY_PROMETHEUS_ENABLED", False),
        )

    @property
    def api_root(self) -> str:
        return f"{self.api_base_url.rstrip('/')}/api"

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :class:`sopdesk.client.BackendClient`."""

        return {
            "base_url": self.api_base_url,
            "timeout": self.api_timeout,
            "upload_timeout": self.upload_timeout,
            "health_timeout": self.health_timeout,
        }

    def build_metrics_recorder(self) -> MetricsRecorder:
        return MetricsRecorder(
            enabled=self.observability_metrics_enabled,
            namespace=self.observability_namespace,
            prometheus_enabled=self.observability_prometheus_enabled,
        )


__all__ = ["Settings"]
