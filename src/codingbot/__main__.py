"""coding-bot CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import AsyncIterator

from dotenv import load_dotenv

from codingbot.config import BotConfig, load_config
from codingbot.models import AdapterEvent, AdapterEventKind

logger = logging.getLogger(__name__)


# ── Local runs ───────────────────────────────────────────────────────────────


async def _print_events(events: AsyncIterator[AdapterEvent]) -> int:
    """Echo adapter events to stdout. Returns a process exit code."""
    async for event in events:
        if event.kind is AdapterEventKind.ASSISTANT_TEXT:
            print(f"[thought] {event.text}")
        elif event.kind is AdapterEventKind.TOOL_USE:
            print(f"[action] {event.tool_name}")
        elif event.kind is AdapterEventKind.SYSTEM_INIT:
            print(f"[init] tools: {', '.join(event.tools)}")
        elif event.kind is AdapterEventKind.QUESTION:
            print(f"[question] {event.text}")
        elif event.kind is AdapterEventKind.RESULT:
            if event.success:
                print(f"[done] {event.text}")
                return 0
            print(f"[failed] {'; '.join(event.errors)}", file=sys.stderr)
            return 1
    print("Error: execution ended without a result", file=sys.stderr)
    return 1


async def _implement(config: BotConfig, ticket_id: str, instructions: str | None) -> int:
    from codingbot.adapter import ClaudeAgentAdapter
    from codingbot.environment import bootstrap_environment
    from codingbot.prompts import SYSTEM_PROMPT, implementation_prompt
    from codingbot.worktree import WorktreeManager, generate_branch_name

    repo = config.repo
    branch = generate_branch_name(ticket_id, repo.branch_prefix)
    manager = WorktreeManager(remote=repo.remote)
    worktree = await manager.create(repo.base_path, repo.name, branch, repo.base_branch)
    print(f"Worktree: {worktree.path} (branch {branch}, {'new' if worktree.created else 'existing'})")

    result = await bootstrap_environment(worktree.path, config.bootstrap)
    for step in result.steps:
        print(f"[setup] {step.name}: {'ok' if step.success else step.error}")
    if not result.success:
        return 1

    adapter = ClaudeAgentAdapter.from_config(config.runtime)
    prompt = implementation_prompt(ticket_id, str(worktree.path), instructions=instructions)
    code = await _print_events(
        adapter.run(
            prompt,
            cwd=worktree.path,
            allowed_tools=config.runtime.assignment_tools,
            system_prompt=SYSTEM_PROMPT,
        )
    )
    print(f"Worktree kept at {worktree.path}; remove it with `coding-bot cleanup --ticket {ticket_id}`")
    return code


async def _cleanup(config: BotConfig, ticket_id: str) -> int:
    from codingbot.worktree import WorktreeManager, generate_branch_name

    repo = config.repo
    branch = generate_branch_name(ticket_id, repo.branch_prefix)
    await WorktreeManager(remote=repo.remote).remove(repo.base_path, repo.name, branch)
    print(f"Removed worktree for {branch}")
    return 0


async def _prompt(config: BotConfig, text: str) -> int:
    from codingbot.adapter import ClaudeAgentAdapter

    adapter = ClaudeAgentAdapter.from_config(config.runtime)
    return await _print_events(
        adapter.run(text, cwd=Path.cwd(), allowed_tools=config.runtime.question_tools)
    )


# ── Argument parsing ─────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(
        prog="coding-bot",
        description="coding-bot: implements and answers tracker tickets in isolated git worktrees",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the YAML config file (default: ./coding-bot.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # coding-bot serve
    serve_parser = subparsers.add_parser("serve", help="Start the webhook server")
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=3000,
        help="Port to bind to (default: 3000)",
    )

    # coding-bot implement
    implement_parser = subparsers.add_parser(
        "implement", help="Implement a ticket locally in its own worktree"
    )
    implement_parser.add_argument("--ticket", required=True, help="Ticket identifier, e.g. ENG-123")
    implement_parser.add_argument(
        "--instructions",
        default=None,
        help="Extra instructions appended to the implementation prompt",
    )

    # coding-bot cleanup
    cleanup_parser = subparsers.add_parser("cleanup", help="Remove a ticket's worktree")
    cleanup_parser.add_argument("--ticket", required=True, help="Ticket identifier, e.g. ENG-123")

    # coding-bot prompt
    prompt_parser = subparsers.add_parser(
        "prompt", help="Send a one-off read-only prompt to the agent in the current directory"
    )
    prompt_parser.add_argument("text", nargs="+", help="Prompt text")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    load_dotenv()

    if args.command == "serve":
        import uvicorn

        from codingbot.server import create_app

        app = create_app(args.config)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    try:
        config = load_config(args.config)
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    if args.command == "implement":
        code = asyncio.run(_implement(config, args.ticket, args.instructions))
    elif args.command == "cleanup":
        code = asyncio.run(_cleanup(config, args.ticket))
    else:
        code = asyncio.run(_prompt(config, " ".join(args.text)))
    sys.exit(code)


if __name__ == "__main__":
    main()
