from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

import httpx

from aurora_session.config.paths import resolve_config_relative
from aurora_session.config.settings import (
    AppSettings,
    LoggingSettings,
    SecretsBackend,
    SecretsSettings,
)
from aurora_session.core.audio.source import AudioSourceFactory, microphone_factory
from aurora_session.core.consent import ConsentGate, ConsentStore
from aurora_session.core.session.engine import SessionEngine
from aurora_session.core.session.finalizer import HttpSessionFinalizer
from aurora_session.core.session.registry import SessionRegistry, default_registry
from aurora_session.core.storage.secrets import (
    EncryptedFileSecretStore,
    KeyringSecretStore,
    SecretStore,
    mask_secret,
)
from aurora_session.core.transport.websocket import Connector
from aurora_session.providers.base import ProviderCatalog
from aurora_session.providers.personaplex import PersonaPlexVoiceAdapter
from aurora_session.providers.realtime_voice import RealtimeVoiceAdapter
from aurora_session.providers.text_completion import backend_chat_adapter, openai_chat_adapter

logger = logging.getLogger(__name__)

SECRETS_PASSPHRASE_ENV = "AURORA_SECRETS_PASSPHRASE"
AUTH_TOKEN_KEY = "auth_token"
AUTH_TOKEN_ENV = "AURORA_AUTH_TOKEN"
OPENAI_API_KEY_KEY = "openai_api_key"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def configure_logging(settings: LoggingSettings, *, config_path: Path) -> RotatingFileHandler | None:
    logging.basicConfig(level=settings.level.upper(), format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    if not settings.file_path:
        return None

    path = resolve_config_relative(settings.file_path, config_dir=config_path.parent)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.getLogger().addHandler(handler)
    return handler


def create_secret_store(
    settings: SecretsSettings,
    *,
    config_path: Path,
    passphrase: str | None = None,
) -> SecretStore:
    passphrase = passphrase or os.getenv(SECRETS_PASSPHRASE_ENV)

    if settings.backend == SecretsBackend.KEYRING:
        return KeyringSecretStore()

    if settings.backend == SecretsBackend.ENCRYPTED_FILE:
        if not passphrase:
            raise ValueError(
                "encrypted_file secrets backend requires a passphrase; "
                f"set {SECRETS_PASSPHRASE_ENV} or pass passphrase explicitly"
            )
        path = resolve_config_relative(settings.encrypted_file_path, config_dir=config_path.parent)
        return EncryptedFileSecretStore(path=path, passphrase=passphrase)

    raise ValueError(f"Unsupported secrets backend: {settings.backend}")


def get_secret(secrets: SecretStore, *, key: str, env_var: str) -> str | None:
    return secrets.get(key) or os.getenv(env_var) or None


def require_secret(secrets: SecretStore, *, key: str, env_var: str) -> str:
    value = get_secret(secrets, key=key, env_var=env_var)
    if value:
        return value
    raise ValueError(f"Missing secret `{key}` (or env var {env_var})")


def create_audio_source_factory(settings: AppSettings) -> AudioSourceFactory:
    return microphone_factory(
        sample_rate_hz=settings.audio.capture_sample_rate_hz or None,
        device=settings.audio.input_device,
        blocksize=settings.audio.blocksize,
    )


def create_provider_catalog(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    audio_source_factory: AudioSourceFactory | None = None,
    http_client: httpx.AsyncClient | None = None,
    connector: Connector | None = None,
) -> ProviderCatalog:
    """Register every provider whose credentials are available."""
    catalog = ProviderCatalog()
    auth_token = get_secret(secrets, key=AUTH_TOKEN_KEY, env_var=AUTH_TOKEN_ENV)
    if auth_token:
        logger.info(f"[Wiring] Backend auth token: {mask_secret(auth_token)}")
    else:
        logger.warning("[Wiring] No backend auth token; backend providers will be rejected")

    catalog.register(
        backend_chat_adapter(
            api_base_url=settings.backend.api_base_url,
            auth_token=auth_token,
            timeout_s=settings.chat.stream_timeout_s,
            client=http_client,
        )
    )

    openai_key = get_secret(secrets, key=OPENAI_API_KEY_KEY, env_var=OPENAI_API_KEY_ENV)
    if openai_key:
        catalog.register(
            openai_chat_adapter(
                api_key=openai_key,
                model=settings.chat.openai_model,
                temperature=settings.chat.temperature,
                max_tokens=settings.chat.max_tokens or None,
                system_prompt=settings.chat.system_prompt,
                timeout_s=settings.chat.stream_timeout_s,
                client=http_client,
            )
        )
    else:
        logger.info(f"[Wiring] openai-chat disabled (set {OPENAI_API_KEY_ENV} to enable)")

    realtime = settings.realtime
    catalog.register(
        RealtimeVoiceAdapter(
            url=realtime.proxy_url,
            instructions=realtime.instructions,
            voice=realtime.voice,
            transcription_model=realtime.transcription_model,
            vad_threshold=realtime.vad_threshold,
            prefix_padding_ms=realtime.prefix_padding_ms,
            silence_duration_ms=realtime.silence_duration_ms,
            sample_rate_hz=settings.audio.wire_sample_rate_hz,
            audio_source_factory=audio_source_factory,
            open_timeout_s=settings.session.ws_open_timeout_s,
            connector=connector,
        )
    )
    catalog.register(
        PersonaPlexVoiceAdapter(
            api_base_url=settings.backend.api_base_url,
            auth_token=auth_token,
            sample_rate_hz=settings.audio.wire_sample_rate_hz,
            audio_source_factory=audio_source_factory,
            open_timeout_s=settings.session.ws_open_timeout_s,
            connector=connector,
        )
    )
    return catalog


def create_finalizer(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    client: httpx.AsyncClient | None = None,
) -> HttpSessionFinalizer:
    return HttpSessionFinalizer(
        url=settings.backend.finalize_url,
        auth_token=get_secret(secrets, key=AUTH_TOKEN_KEY, env_var=AUTH_TOKEN_ENV),
        timeout_s=settings.backend.request_timeout_s,
        client=client,
    )


def create_consent_gate(secrets: SecretStore) -> ConsentGate:
    return ConsentGate(store=ConsentStore(secrets=secrets))


def create_engine(
    settings: AppSettings,
    *,
    secrets: SecretStore,
    catalog: ProviderCatalog | None = None,
    finalizer: HttpSessionFinalizer | None = None,
    registry: SessionRegistry | None = None,
) -> SessionEngine:
    if catalog is None:
        catalog = create_provider_catalog(
            settings, secrets=secrets, audio_source_factory=create_audio_source_factory(settings)
        )
    return SessionEngine(
        catalog=catalog,
        consent=create_consent_gate(secrets),
        finalizer=finalizer or create_finalizer(settings, secrets=secrets),
        registry=registry or default_registry,
        stall_window_s=settings.session.stall_window_s,
    )
