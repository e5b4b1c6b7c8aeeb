from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from aurora_session.app.headless import HeadlessSessionRunner
from aurora_session.app.wiring import (
    configure_logging,
    create_consent_gate,
    create_engine,
    create_finalizer,
    create_secret_store,
)
from aurora_session.config.paths import default_settings_path
from aurora_session.config.settings import AppSettings, load_settings
from aurora_session.domain.models import Modality


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aurora-session")
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    parser.add_argument(
        "--config",
        type=Path,
        default=default_settings_path(),
        help="Path to settings JSON (default: user config dir)",
    )

    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Text chat with the AI companion from stdin")
    chat.add_argument("--provider", help="Provider id (default: provider.chat in settings)")

    voice = sub.add_parser("voice", help="Live voice call using the microphone")
    voice.add_argument("--provider", help="Provider id (default: provider.voice in settings)")

    consent = sub.add_parser("consent", help="Show or change AI data-sharing consent")
    consent.add_argument("action", choices=("show", "grant", "deny", "reset"))

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__

        print(__version__)
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    settings = _load_settings_or_default(args.config)
    configure_logging(settings.logging, config_path=args.config)

    try:
        secrets = create_secret_store(settings.secrets, config_path=args.config)
    except Exception as exc:
        print(f"Error: failed to open secret store: {exc}", flush=True)
        return 2

    if args.command == "consent":
        gate = create_consent_gate(secrets)
        if args.action == "grant":
            gate.grant()
        elif args.action == "deny":
            gate.deny()
        elif args.action == "reset":
            gate.reset()
        print(gate.status.value, flush=True)
        return 0

    modality = Modality.TEXT if args.command == "chat" else Modality.VOICE
    provider_id = args.provider or settings.provider.default_for(modality)

    async def _run() -> int:
        finalizer = create_finalizer(settings, secrets=secrets)
        engine = create_engine(settings, secrets=secrets, finalizer=finalizer)
        runner = HeadlessSessionRunner(engine=engine, modality=modality, provider_id=provider_id)
        try:
            return await runner.run()
        finally:
            await finalizer.close()

    return asyncio.run(_run())


def _load_settings_or_default(path: Path) -> AppSettings:
    if path.exists():
        return load_settings(path)
    return AppSettings()


if __name__ == "__main__":
    raise SystemExit(main())
