"""Chimp - conversation context engine.

Maintenance entry point for the conversation snapshot.
Usage:
    python -m chimp.main --init                   # Write default config
    python -m chimp.main --status                 # Show snapshot status
    python -m chimp.main --prune                  # Drop expired conversations
    python -m chimp.main --prune --max-age-days 2
    python -m chimp.main --clear USER_ID          # Clear one conversation
    python -m chimp.main --clear-all              # Clear every conversation
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path

import structlog

from chimp.config import ChimpConfig, get_chimp_home, load_config, save_default_config
from chimp.core.memory.manager import ConversationEngine

logger = structlog.get_logger()

_LOG_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def setup_logging(level: str = "info") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LOG_LEVELS.get(level.lower(), 20)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def ensure_chimp_home() -> Path:
    """Ensure the ~/.chimp directory structure exists."""
    home = get_chimp_home()
    for d in (home, home / "data"):
        d.mkdir(parents=True, exist_ok=True)
    return home


async def _handle_status(config: ChimpConfig) -> dict:
    engine = ConversationEngine(config)
    await engine.init(start_timer=False)
    # Read-only: no save on the way out
    return await engine.status()


async def _handle_prune(config: ChimpConfig, max_age_days: float | None) -> int:
    engine = ConversationEngine(config)
    await engine.init(start_timer=False)
    max_age = timedelta(days=max_age_days) if max_age_days is not None else None
    removed = await engine.prune_old_conversations(max_age)
    await engine.shutdown()
    return removed


async def _handle_clear(config: ChimpConfig, identity: str) -> bool:
    engine = ConversationEngine(config)
    await engine.init(start_timer=False)
    cleared = await engine.clear(identity)
    await engine.shutdown()
    return cleared


async def _handle_clear_all(config: ChimpConfig) -> bool:
    engine = ConversationEngine(config)
    await engine.init(start_timer=False)
    saved = await engine.clear_all()
    await engine.shutdown()
    return saved


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Chimp - conversation context engine",
        prog="chimp",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Initialize default configuration",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: ~/.chimp/config.yaml)",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show conversation snapshot status as JSON",
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Remove conversations older than the configured max age",
    )
    parser.add_argument(
        "--max-age-days",
        type=float,
        default=None,
        help="Override the max age used by --prune",
    )
    parser.add_argument(
        "--clear",
        type=str,
        default=None,
        metavar="IDENTITY",
        help="Clear the conversation for a user or channel id",
    )
    parser.add_argument(
        "--clear-all",
        action="store_true",
        help="Clear every stored conversation",
    )
    args = parser.parse_args(argv)

    if args.init:
        config_path = save_default_config(
            Path(args.config) if args.config else None
        )
        print(f"Default config saved to: {config_path}")
        return 0

    # Load config
    config_path = Path(args.config) if args.config else None
    config = load_config(config_path)

    setup_logging(config.log_level)
    ensure_chimp_home()

    if args.status:
        status = asyncio.run(_handle_status(config))
        print(json.dumps(status, indent=2, ensure_ascii=False))
    elif args.prune:
        removed = asyncio.run(_handle_prune(config, args.max_age_days))
        print(f"Pruned {removed} conversation(s)")
    elif args.clear:
        cleared = asyncio.run(_handle_clear(config, args.clear))
        print(f"Cleared {args.clear}" if cleared else f"No conversation for {args.clear}")
        return 0 if cleared else 1
    elif args.clear_all:
        saved = asyncio.run(_handle_clear_all(config))
        print("All conversations cleared" if saved else "Failed to save cleared conversations")
        return 0 if saved else 1
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
