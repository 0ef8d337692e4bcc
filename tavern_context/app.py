from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .assembler import RequestAssembler
from .config import Settings
from .errors import TavernError
from .lore.engine import LoreEngine
from .memory.context import ContextManager
from .models import DIRECTION_INPUT, ROLE_USER, RewriteRule, SessionKey
from .persona.loader import PersonaLoader
from .presets.loader import PresetLoader
from .rewrite.rules import RegexRewriter
from .services.gemini_client import GeminiClient
from .storage.store import TavernStore

logger = logging.getLogger("tavern_context")


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@dataclass(slots=True)
class Components:
    settings: Settings
    store: TavernStore
    llm: Optional[GeminiClient]
    rewriter: RegexRewriter
    personas: PersonaLoader
    lore: LoreEngine
    presets: PresetLoader
    context: ContextManager
    assembler: RequestAssembler

    async def aclose(self) -> None:
        await self.context.aclose()
        if self.llm is not None:
            await self.llm.close()


def build_components(settings: Settings) -> Components:
    store = TavernStore(settings.sqlite_path, busy_timeout_ms=settings.store_busy_timeout_ms)
    llm: Optional[GeminiClient] = None
    if settings.gemini_api_key:
        llm = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout_seconds=settings.gemini_timeout_seconds,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            base_url=settings.gemini_base_url,
        )
    rewriter = RegexRewriter(store)
    personas = PersonaLoader(store)
    lore = LoreEngine(store, checker=rewriter.checker)
    presets = PresetLoader(store)
    context = ContextManager(
        store,
        llm,
        settings.context,
        summary_enabled=settings.summary_enabled,
        summary_timeout_seconds=settings.summary_timeout_seconds,
    )
    assembler = RequestAssembler(
        rewriter=rewriter,
        personas=personas,
        lore=lore,
        presets=presets,
        model=settings.gemini_model,
    )
    return Components(
        settings=settings,
        store=store,
        llm=llm,
        rewriter=rewriter,
        personas=personas,
        lore=lore,
        presets=presets,
        context=context,
        assembler=assembler,
    )


def _session_from_args(args: argparse.Namespace) -> SessionKey:
    return SessionKey(
        chat_id=args.chat_id,
        bot_id=args.bot_id,
        user_id=args.user_id,
        thread_id=args.thread_id,
    )


def _add_session_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chat-id", type=int, required=True)
    parser.add_argument("--bot-id", type=int, default=0)
    parser.add_argument("--user-id", type=int, default=None)
    parser.add_argument("--thread-id", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tavern-context", description="Persona/lore/preset request assembly")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create or upgrade the SQLite schema")

    preview = sub.add_parser("preview", help="print the assembled request for a session as JSON")
    _add_session_arguments(preview)
    preview.add_argument("--owner-id", type=int, default=None)
    preview.add_argument("--api-family", default=None)
    preview.add_argument("--record", action="store_true", help="also append the input to the session history")
    preview.add_argument("input", nargs="?", default="")

    clear = sub.add_parser("clear", help="append a truncation marker to a session")
    _add_session_arguments(clear)

    for name, help_text in (
        ("import-persona", "import a V2 character card (.json or .png)"),
        ("import-lore", "import a world-info JSON document"),
        ("import-preset", "import a parameter preset JSON document"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("path", type=Path)
        command.add_argument("--owner-id", type=int, default=None)
        command.add_argument("--activate", action="store_true")
        if name == "import-preset":
            command.add_argument("--api-family", default=None)

    rule = sub.add_parser("add-rule", help="add a regex rewrite rule")
    rule.add_argument("pattern")
    rule.add_argument("replacement")
    rule.add_argument("--direction", default=DIRECTION_INPUT)
    rule.add_argument("--order", type=int, default=0)
    rule.add_argument("--name", default="")
    rule.add_argument("--owner-id", type=int, default=None)
    return parser


async def _run_command(args: argparse.Namespace, components: Components) -> int:
    store = components.store
    await store.init()
    command = args.command

    if command == "init-db":
        logger.info("Database ready at %s", store.db_path)
        return 0

    if command == "preview":
        session = _session_from_args(args)
        api_family = args.api_family or components.settings.default_api_family
        build_context = await components.context.build_context(session, args.owner_id, args.input, api_family)
        request = await components.assembler.build(build_context)
        if args.record and args.input:
            await components.context.add_message(session, ROLE_USER, args.input)
            await components.context.drain()
        print(json.dumps(request.to_payload(), ensure_ascii=False, indent=2))
        return 0

    if command == "clear":
        await components.context.clear_history(_session_from_args(args))
        return 0

    if command == "import-persona":
        if args.path.suffix.lower() == ".png":
            persona = await components.personas.import_png(args.owner_id, args.path.read_bytes())
        else:
            persona = await components.personas.save_card(args.owner_id, args.path.read_text(encoding="utf-8-sig"))
        if args.activate:
            await components.personas.activate(args.owner_id, persona.id)
        print(persona.id)
        return 0

    if command == "import-lore":
        database = await components.lore.save_database(args.owner_id, args.path.read_text(encoding="utf-8-sig"))
        if args.activate:
            await components.lore.activate(args.owner_id, database.id)
        print(database.id)
        return 0

    if command == "import-preset":
        api_family = args.api_family or components.settings.default_api_family
        preset = await components.presets.save_preset(
            args.owner_id,
            api_family,
            args.path.read_text(encoding="utf-8-sig"),
        )
        if args.activate:
            await components.presets.activate(args.owner_id, preset.id)
        print(preset.id)
        return 0

    if command == "add-rule":
        saved = await components.rewriter.save_rule(
            RewriteRule(
                pattern=args.pattern,
                replacement=args.replacement,
                direction=args.direction,
                order=args.order,
                name=args.name,
                owner_id=args.owner_id,
            )
        )
        print(saved.id)
        return 0

    raise ValueError(f"unknown command: {command}")


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    components = build_components(settings)
    try:
        return await _run_command(args, components)
    finally:
        await components.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = Settings.from_env()
    settings.validate(require_llm=False)
    try:
        return asyncio.run(_run(args, settings))
    except TavernError as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
