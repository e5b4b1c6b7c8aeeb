from __future__ import annotations

from dataclasses import dataclass

import aurora_session.main as cli
from aurora_session.core.storage.secrets import InMemorySecretStore
from aurora_session.domain.models import Modality


@dataclass
class FakeRunner:
    engine: object
    modality: Modality
    provider_id: str
    last: FakeRunner | None = None

    async def run(self) -> int:
        FakeRunner.last = self
        return 0


@dataclass
class FakeFinalizer:
    closed: bool = False

    async def close(self) -> None:
        self.closed = True


def _patch(monkeypatch, secrets=None):
    finalizer = FakeFinalizer()
    engine = object()
    monkeypatch.setattr(cli, "HeadlessSessionRunner", FakeRunner)
    monkeypatch.setattr(cli, "configure_logging", lambda *_a, **_k: None)
    monkeypatch.setattr(cli, "create_secret_store", lambda *_a, **_k: secrets or InMemorySecretStore())
    monkeypatch.setattr(cli, "create_finalizer", lambda *_a, **_k: finalizer)
    monkeypatch.setattr(cli, "create_engine", lambda *_a, **_k: engine)
    return finalizer, engine


def test_chat_uses_configured_default_provider(monkeypatch, tmp_path):
    finalizer, engine = _patch(monkeypatch)

    code = cli.main(["--config", str(tmp_path / "settings.json"), "chat"])

    assert code == 0
    assert FakeRunner.last.engine is engine
    assert FakeRunner.last.modality == Modality.TEXT
    assert FakeRunner.last.provider_id == "aurora-chat"
    assert finalizer.closed is True


def test_voice_provider_flag_overrides_default(monkeypatch, tmp_path):
    _patch(monkeypatch)

    code = cli.main(["--config", str(tmp_path / "settings.json"), "voice", "--provider", "personaplex"])

    assert code == 0
    assert FakeRunner.last.modality == Modality.VOICE
    assert FakeRunner.last.provider_id == "personaplex"


def test_consent_grant_persists_decision(monkeypatch, tmp_path, capsys):
    secrets = InMemorySecretStore()
    _patch(monkeypatch, secrets)

    code = cli.main(["--config", str(tmp_path / "settings.json"), "consent", "grant"])

    assert code == 0
    assert secrets.items["ai_data_consent"] == "granted"
    assert capsys.readouterr().out.strip() == "granted"


def test_consent_show_defaults_to_unknown(monkeypatch, tmp_path, capsys):
    _patch(monkeypatch)

    assert cli.main(["--config", str(tmp_path / "settings.json"), "consent", "show"]) == 0
    assert capsys.readouterr().out.strip() == "unknown"


def test_secret_store_failure_returns_error(monkeypatch, tmp_path):
    _patch(monkeypatch)
    monkeypatch.setattr("builtins.print", lambda *_a, **_k: None)

    def _boom(*_a, **_k):
        raise ValueError("encrypted_file secrets backend requires a passphrase")

    monkeypatch.setattr(cli, "create_secret_store", _boom)

    assert cli.main(["--config", str(tmp_path / "settings.json"), "chat"]) == 2


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 2
    assert "aurora-session" in capsys.readouterr().out
