from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from relay.config import Settings, configure_logging, load_app_config, load_environment
from relay.core.context import RelayContext
from relay.core.handler import cancel, handle_message
from relay.models.base import Effort

CLI_USER = "cli"


# --------------------------------------------------------------------------------------
# Terminal adapter
# --------------------------------------------------------------------------------------


class TerminalAdapter:
    """
    Prints the handler's output to stdout.

    Terminals have no message size limit, so `max_message_length` is large.
    """

    max_message_length = 1_000_000

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose

    async def send_text(self, text: str) -> None:
        print(text, flush=True)


# --------------------------------------------------------------------------------------
# Context builder
# --------------------------------------------------------------------------------------


def build_context(config_path: Optional[str]) -> RelayContext:
    """
    Build the relay context from `.env` and an optional YAML config file.
    """
    cfg: Dict[str, Any] = load_app_config(config_path) if config_path else {}
    settings = Settings.from_env(cfg)
    configure_logging(settings.log_level)
    return RelayContext.build(settings)


# --------------------------------------------------------------------------------------
# Commands
# --------------------------------------------------------------------------------------


async def run_ask(ctx: RelayContext, question: str, effort: str, verbose: bool) -> int:
    session = ctx.sessions.get(CLI_USER)
    session.effort = Effort.parse(effort)
    answer = await handle_message(ctx, CLI_USER, question, TerminalAdapter(verbose=verbose))
    return 0 if answer is not None else 1


async def run_chat(ctx: RelayContext, effort: str, verbose: bool, heartbeat: bool) -> None:
    """
    Interactive chat loop.

    Commands: /new, /model [key], /effort <level>, /status, /health,
    /fallback, /exit. Ctrl+C during an answer cancels it.
    """
    adapter = TerminalAdapter(verbose=verbose)
    session = ctx.sessions.get(CLI_USER)
    session.effort = Effort.parse(effort)
    ctx.start(heartbeat=heartbeat)

    print("\n[Interactive chat started]")
    print("Backend:", ctx.registry.get_active_key())
    print("Type /exit or press Ctrl+D to end the session.\n")

    try:
        while True:
            try:
                user_input = (await asyncio.to_thread(input, "You> ")).strip()
            except EOFError:
                print()
                break
            if not user_input:
                continue

            command, _, arg = user_input.partition(" ")
            command = command.lower()
            arg = arg.strip()
            if command in {"/exit", "/quit"}:
                break
            if command == "/new":
                ctx.sessions.reset(CLI_USER)
                print("[New conversation]")
                continue
            if command == "/model":
                if not arg:
                    print("\n".join(ctx.status_lines()))
                elif ctx.registry.switch_to(arg):
                    print(f"[Active backend: {arg}]")
                else:
                    print(f"[Unknown backend: {arg}]")
                continue
            if command == "/effort":
                try:
                    session.effort = Effort.parse(arg)
                    print(f"[Effort: {session.effort.label}]")
                except ValueError as exc:
                    print(f"[{exc}]")
                continue
            if command == "/status":
                print("\n".join(ctx.status_lines()))
                print(f"Session cost: ${session.total_cost:.4f}")
                continue
            if command == "/health":
                print(json.dumps(ctx.get_health_status(), indent=2))
                continue
            if command == "/fallback":
                print(ctx.fallback_store.format_order())
                continue

            task = asyncio.create_task(handle_message(ctx, CLI_USER, user_input, adapter))
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # Ctrl+C cancels the main task; stop the answer and keep chatting
                cancel(ctx, CLI_USER)
                await task
    finally:
        await ctx.stop()
    print("Bye")


async def run_health(ctx: RelayContext) -> None:
    await ctx.heartbeat.run_round()
    print(json.dumps(ctx.get_health_status(), indent=2))
    print("Active backend:", ctx.registry.get_active_key())


def run_fallback(ctx: RelayContext, action: str, keys: List[str]) -> int:
    store = ctx.fallback_store
    if action == "show":
        print(store.format_order())
        return 0
    if not keys:
        print(f"fallback {action} needs at least one backend key", file=sys.stderr)
        return 2

    unknown = [key for key in keys if ctx.registry.get(key) is None]
    if unknown and action != "remove":
        print(f"Warning: not configured: {', '.join(unknown)}", file=sys.stderr)

    if action == "set":
        store.save(keys[0], keys[1:], updated_by=CLI_USER)
    elif action == "up":
        store.move_up(keys[0], updated_by=CLI_USER)
    elif action == "down":
        store.move_down(keys[0], updated_by=CLI_USER)
    elif action == "add":
        for key in keys:
            store.add(key, updated_by=CLI_USER)
    elif action == "remove":
        for key in keys:
            store.remove(key, updated_by=CLI_USER)
    print(store.format_order())
    return 0


# --------------------------------------------------------------------------------------
# CLI
# --------------------------------------------------------------------------------------


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Multi-backend LLM relay (ordered fallback, health checks, tools)."
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional path to config.yaml (custom backends, heartbeat, prompts, tools).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # ask: single turn through the fallback chain
    ask_parser = subparsers.add_parser("ask", help="Send a single message.")
    ask_parser.add_argument(
        "--effort",
        choices=[e.label for e in Effort],
        default="high",
        help="Thinking effort.",
    )
    ask_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show tool calls.",
    )
    ask_parser.add_argument(
        "question",
        help="Message to send.",
    )

    # chat: interactive loop
    chat_parser = subparsers.add_parser("chat", help="Interactive chat session.")
    chat_parser.add_argument(
        "--effort",
        choices=[e.label for e in Effort],
        default="high",
        help="Thinking effort.",
    )
    chat_parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show tool calls.",
    )
    chat_parser.add_argument(
        "--no-heartbeat",
        action="store_true",
        help="Do not run background health probes.",
    )

    # status / health: diagnostics
    subparsers.add_parser("status", help="List configured backends.")
    subparsers.add_parser("health", help="Probe every backend of the chain once.")

    # fallback: view and edit the persisted order
    fallback_parser = subparsers.add_parser("fallback", help="Show or edit the fallback order.")
    fallback_parser.add_argument(
        "action",
        choices=["show", "set", "up", "down", "add", "remove"],
        nargs="?",
        default="show",
        help="'set PRIMARY [FALLBACK ...]', 'up KEY', 'down KEY', 'add KEY...', 'remove KEY...'.",
    )
    fallback_parser.add_argument(
        "keys",
        nargs="*",
        help="Backend keys.",
    )

    return parser.parse_args(argv)


# --------------------------------------------------------------------------------------
# main()
# --------------------------------------------------------------------------------------


def main() -> None:
    # Load environment variables from ENV_FILE or .env (if present)
    load_environment()

    args = parse_args(sys.argv[1:])
    ctx = build_context(args.config)

    if args.command == "chat":
        try:
            asyncio.run(
                run_chat(ctx, effort=args.effort, verbose=args.verbose, heartbeat=not args.no_heartbeat)
            )
        except KeyboardInterrupt:
            print("\n[Session interrupted by user, exiting chat]")
        return

    if args.command == "ask":
        raise SystemExit(asyncio.run(run_ask(ctx, args.question, args.effort, args.verbose)))

    if args.command == "status":
        print("\n".join(ctx.status_lines()))
        return

    if args.command == "health":
        asyncio.run(run_health(ctx))
        return

    if args.command == "fallback":
        raise SystemExit(run_fallback(ctx, args.action, args.keys))

    # Should never reach here
    raise SystemExit(f"Unknown command: {args.command!r}")


if __name__ == "__main__":
    main()
