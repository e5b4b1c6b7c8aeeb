from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from aurora_session.domain.models import Modality

DEFAULT_VOICE_INSTRUCTIONS = (
    "You are Aurora, a warm and empathetic AI mental wellbeing companion. "
    "Listen carefully, ask thoughtful questions and offer supportive guidance "
    "without judgement. Keep your answers short, this is a spoken conversation."
)


class ChatProviderName(str, Enum):
    AURORA = "aurora-chat"
    OPENAI = "openai-chat"


class VoiceProviderName(str, Enum):
    OPENAI_REALTIME = "openai-realtime"
    PERSONAPLEX = "personaplex"


class SecretsBackend(str, Enum):
    KEYRING = "keyring"
    ENCRYPTED_FILE = "encrypted_file"


@dataclass(slots=True)
class ProviderSettings:
    chat: ChatProviderName = ChatProviderName.AURORA
    voice: VoiceProviderName = VoiceProviderName.OPENAI_REALTIME

    def validate(self) -> None:
        if not isinstance(self.chat, ChatProviderName):
            raise ValueError("invalid chat provider")
        if not isinstance(self.voice, VoiceProviderName):
            raise ValueError("invalid voice provider")

    def default_for(self, modality: Modality) -> str:
        return self.chat.value if modality == Modality.TEXT else self.voice.value


@dataclass(slots=True)
class BackendSettings:
    api_base_url: str = "http://localhost:3000/api"
    finalize_path: str = "/journal/save-chat-context"
    request_timeout_s: float = 30.0

    def validate(self) -> None:
        if not self.api_base_url.startswith(("http://", "https://")):
            raise ValueError("api_base_url must start with http:// or https://")
        if not self.finalize_path.startswith("/"):
            raise ValueError("finalize_path must start with '/'")
        if self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be > 0")

    @property
    def finalize_url(self) -> str:
        return self.api_base_url.rstrip("/") + self.finalize_path


@dataclass(slots=True)
class SessionSettings:
    stall_window_s: float = 15.0
    ws_open_timeout_s: float = 10.0

    def validate(self) -> None:
        if self.stall_window_s <= 0:
            raise ValueError("stall_window_s must be > 0")
        if self.ws_open_timeout_s <= 0:
            raise ValueError("ws_open_timeout_s must be > 0")


@dataclass(slots=True)
class ChatSettings:
    openai_model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 0  # 0 = provider default
    system_prompt: str = ""
    stream_timeout_s: float = 60.0

    def validate(self) -> None:
        if not self.openai_model:
            raise ValueError("openai_model must be non-empty")
        if not (0.0 <= self.temperature <= 2.0):
            raise ValueError("temperature must be in 0.0..2.0")
        if self.max_tokens < 0:
            raise ValueError("max_tokens must be >= 0")
        if self.stream_timeout_s <= 0:
            raise ValueError("stream_timeout_s must be > 0")


@dataclass(slots=True)
class RealtimeSettings:
    proxy_url: str = "ws://localhost:8080"
    voice: str = "alloy"
    instructions: str = DEFAULT_VOICE_INSTRUCTIONS
    transcription_model: str = "whisper-1"
    vad_threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500

    def validate(self) -> None:
        if not self.proxy_url.startswith(("ws://", "wss://")):
            raise ValueError("proxy_url must start with ws:// or wss://")
        if not self.voice:
            raise ValueError("voice must be non-empty")
        if not (0.0 <= self.vad_threshold <= 1.0):
            raise ValueError("vad_threshold must be in 0.0..1.0")
        if self.prefix_padding_ms < 0:
            raise ValueError("prefix_padding_ms must be >= 0")
        if self.silence_duration_ms <= 0:
            raise ValueError("silence_duration_ms must be > 0")


@dataclass(slots=True)
class AudioSettings:
    wire_sample_rate_hz: int = 24000
    capture_sample_rate_hz: int = 0  # 0 = device default
    input_device: str = ""
    blocksize: int = 0

    def validate(self) -> None:
        if self.wire_sample_rate_hz not in (16000, 24000):
            raise ValueError("wire_sample_rate_hz must be 16000 or 24000")
        if self.capture_sample_rate_hz < 0:
            raise ValueError("capture_sample_rate_hz must be >= 0")
        if self.input_device is None:
            raise ValueError("input_device must be a string")
        if self.blocksize < 0:
            raise ValueError("blocksize must be >= 0")


@dataclass(slots=True)
class SecretsSettings:
    backend: SecretsBackend = SecretsBackend.KEYRING
    encrypted_file_path: str = "secrets.json"

    def validate(self) -> None:
        if not isinstance(self.backend, SecretsBackend):
            raise ValueError("invalid secrets backend")
        if self.backend == SecretsBackend.ENCRYPTED_FILE and not self.encrypted_file_path:
            raise ValueError("encrypted_file_path must be set for encrypted_file backend")


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"
    file_path: str = ""  # empty = console only
    max_bytes: int = 1_000_000
    backup_count: int = 3

    def validate(self) -> None:
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("level must be a logging level name")
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        if self.backup_count < 0:
            raise ValueError("backup_count must be >= 0")


@dataclass(slots=True)
class AppSettings:
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)
    realtime: RealtimeSettings = field(default_factory=RealtimeSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    secrets: SecretsSettings = field(default_factory=SecretsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def validate(self) -> None:
        self.provider.validate()
        self.backend.validate()
        self.session.validate()
        self.chat.validate()
        self.realtime.validate()
        self.audio.validate()
        self.secrets.validate()
        self.logging.validate()


def to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "provider": {"chat": settings.provider.chat.value, "voice": settings.provider.voice.value},
        "backend": {
            "api_base_url": settings.backend.api_base_url,
            "finalize_path": settings.backend.finalize_path,
            "request_timeout_s": settings.backend.request_timeout_s,
        },
        "session": {
            "stall_window_s": settings.session.stall_window_s,
            "ws_open_timeout_s": settings.session.ws_open_timeout_s,
        },
        "chat": {
            "openai_model": settings.chat.openai_model,
            "temperature": settings.chat.temperature,
            "max_tokens": settings.chat.max_tokens,
            "system_prompt": settings.chat.system_prompt,
            "stream_timeout_s": settings.chat.stream_timeout_s,
        },
        "realtime": {
            "proxy_url": settings.realtime.proxy_url,
            "voice": settings.realtime.voice,
            "instructions": settings.realtime.instructions,
            "transcription_model": settings.realtime.transcription_model,
            "vad_threshold": settings.realtime.vad_threshold,
            "prefix_padding_ms": settings.realtime.prefix_padding_ms,
            "silence_duration_ms": settings.realtime.silence_duration_ms,
        },
        "audio": {
            "wire_sample_rate_hz": settings.audio.wire_sample_rate_hz,
            "capture_sample_rate_hz": settings.audio.capture_sample_rate_hz,
            "input_device": settings.audio.input_device,
            "blocksize": settings.audio.blocksize,
        },
        "secrets": {
            "backend": settings.secrets.backend.value,
            "encrypted_file_path": settings.secrets.encrypted_file_path,
        },
        "logging": {
            "level": settings.logging.level,
            "file_path": settings.logging.file_path,
            "max_bytes": settings.logging.max_bytes,
            "backup_count": settings.logging.backup_count,
        },
    }


def _parse_chat_provider(value: str) -> ChatProviderName:
    """Unknown ids (e.g. a provider removed since the file was written) fall back to the default."""
    try:
        return ChatProviderName(value)
    except ValueError:
        return ChatProviderName.AURORA


def _parse_voice_provider(value: str) -> VoiceProviderName:
    try:
        return VoiceProviderName(value)
    except ValueError:
        return VoiceProviderName.OPENAI_REALTIME


def from_dict(data: dict[str, Any]) -> AppSettings:
    provider = data.get("provider") or {}
    backend = data.get("backend") or {}
    session = data.get("session") or {}
    chat = data.get("chat") or {}
    realtime = data.get("realtime") or {}
    audio = data.get("audio") or {}
    secrets = data.get("secrets") or {}
    log = data.get("logging") or {}

    input_device_raw = audio.get("input_device")

    settings = AppSettings(
        provider=ProviderSettings(
            chat=_parse_chat_provider(provider.get("chat", ChatProviderName.AURORA.value)),
            voice=_parse_voice_provider(
                provider.get("voice", VoiceProviderName.OPENAI_REALTIME.value)
            ),
        ),
        backend=BackendSettings(
            api_base_url=str(backend.get("api_base_url", "http://localhost:3000/api")),
            finalize_path=str(backend.get("finalize_path", "/journal/save-chat-context")),
            request_timeout_s=float(backend.get("request_timeout_s", 30.0)),
        ),
        session=SessionSettings(
            stall_window_s=float(session.get("stall_window_s", 15.0)),
            ws_open_timeout_s=float(session.get("ws_open_timeout_s", 10.0)),
        ),
        chat=ChatSettings(
            openai_model=str(chat.get("openai_model", "gpt-4o-mini")),
            temperature=float(chat.get("temperature", 0.7)),
            max_tokens=int(chat.get("max_tokens", 0)),
            system_prompt=str(chat.get("system_prompt", "")),
            stream_timeout_s=float(chat.get("stream_timeout_s", 60.0)),
        ),
        realtime=RealtimeSettings(
            proxy_url=str(realtime.get("proxy_url", "ws://localhost:8080")),
            voice=str(realtime.get("voice", "alloy")),
            instructions=str(realtime.get("instructions", DEFAULT_VOICE_INSTRUCTIONS)),
            transcription_model=str(realtime.get("transcription_model", "whisper-1")),
            vad_threshold=float(realtime.get("vad_threshold", 0.5)),
            prefix_padding_ms=int(realtime.get("prefix_padding_ms", 300)),
            silence_duration_ms=int(realtime.get("silence_duration_ms", 500)),
        ),
        audio=AudioSettings(
            wire_sample_rate_hz=int(audio.get("wire_sample_rate_hz", 24000)),
            capture_sample_rate_hz=int(audio.get("capture_sample_rate_hz", 0)),
            input_device=str(input_device_raw) if input_device_raw is not None else "",
            blocksize=int(audio.get("blocksize", 0)),
        ),
        secrets=SecretsSettings(
            backend=SecretsBackend(secrets.get("backend", SecretsBackend.KEYRING.value)),
            encrypted_file_path=str(secrets.get("encrypted_file_path", "secrets.json")),
        ),
        logging=LoggingSettings(
            level=str(log.get("level", "INFO")),
            file_path=str(log.get("file_path", "")),
            max_bytes=int(log.get("max_bytes", 1_000_000)),
            backup_count=int(log.get("backup_count", 3)),
        ),
    )
    settings.validate()
    return settings


def load_settings(path: Path) -> AppSettings:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("settings file must contain a JSON object")
    return from_dict(raw)


def save_settings(path: Path, settings: AppSettings) -> None:
    settings.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_dict(settings), ensure_ascii=False, indent=2), encoding="utf-8")
