"""
Tracked conversation manager: inspect the ledger and maintain the set of
conversation ids the service ingests.

Runnable as::

    wa-recap-tracked list                 # ledger conversations, * = tracked
    wa-recap-tracked show                 # effective tracked set
    wa-recap-tracked add ID [--label L]
    wa-recap-tracked remove ID
    wa-recap-tracked select               # interactive checkbox (InquirerPy)

Changes are written to ``tracked_conversations.json``; ids listed in
``settings.toml`` stay tracked regardless and cannot be removed here.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from historysync.config import (
    _DEFAULT_CONFIG_PATH,
    get_tracked_file_path,
    load_config,
    load_tracked_file,
    normalize_tracked_ids,
    save_tracked_file,
)
from historysync.ledger_store import ConversationSummary, LedgerStore
from shared.db import get_connection_pool

logger = logging.getLogger("historysync.manage_tracked")


def _configured_ids(config: Dict[str, Any]) -> set[str]:
    return normalize_tracked_ids(config.get("recap", {}).get("tracked_conversation_ids"))


async def fetch_conversations(config: Dict[str, Any]) -> List[ConversationSummary]:
    """Read conversation summaries from the ledger."""
    pool = await get_connection_pool(dict(config["database"]))
    try:
        return await LedgerStore(pool).list_conversations()
    finally:
        await pool.close()


def add_tracked(config: Dict[str, Any], conversation_id: str, label: str = "") -> Path:
    path = get_tracked_file_path(config)
    tracked = load_tracked_file(path)
    tracked[conversation_id] = label or tracked.get(conversation_id, "")
    return save_tracked_file(path, tracked)


def remove_tracked(config: Dict[str, Any], conversation_id: str) -> Optional[Path]:
    """Drop an id from the tracked file; ``None`` if it was not there."""
    path = get_tracked_file_path(config)
    tracked = load_tracked_file(path)
    if conversation_id not in tracked:
        return None
    del tracked[conversation_id]
    return save_tracked_file(path, tracked)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_list(config: Dict[str, Any]) -> int:
    conversations = asyncio.run(fetch_conversations(config))
    if not conversations:
        print("No conversations in the ledger yet.")
        return 0
    tracked = _configured_ids(config) | set(load_tracked_file(get_tracked_file_path(config)))
    for conv in conversations:
        marker = "*" if conv.conversation_id in tracked else " "
        name = conv.display_name or "(unnamed)"
        print(f"{marker} {conv.conversation_id}  {name}  [{conv.message_count} messages]")
    return 0


def cmd_show(config: Dict[str, Any]) -> int:
    configured = _configured_ids(config)
    from_file = load_tracked_file(get_tracked_file_path(config))
    if not configured and not from_file:
        print("No tracked conversations.")
        return 1
    for conversation_id in sorted(configured):
        print(f"{conversation_id}  (settings.toml)")
    for conversation_id, label in sorted(from_file.items()):
        if conversation_id not in configured:
            print(f"{conversation_id}  {label}".rstrip())
    return 0


def cmd_add(config: Dict[str, Any], conversation_id: str, label: str) -> int:
    path = add_tracked(config, conversation_id, label)
    print(f"Tracking {conversation_id} (saved to {path})")
    return 0


def cmd_remove(config: Dict[str, Any], conversation_id: str) -> int:
    if conversation_id in _configured_ids(config):
        print(f"{conversation_id} is set in settings.toml; edit that file to remove it.")
        return 1
    path = remove_tracked(config, conversation_id)
    if path is None:
        print(f"{conversation_id} was not tracked.")
        return 1
    print(f"No longer tracking {conversation_id} (saved to {path})")
    return 0


async def _select_interactive(config: Dict[str, Any]) -> int:
    try:
        from InquirerPy import inquirer
    except ImportError:
        print("Error: InquirerPy is required. Install with: pip install 'wa-recap[manage]'")
        return 1

    conversations = await fetch_conversations(config)
    if not conversations:
        print("No conversations in the ledger yet.")
        return 1

    configured = _configured_ids(config)
    path = get_tracked_file_path(config)
    current = load_tracked_file(path)
    choices = [
        {
            "name": f"{c.display_name or '(unnamed)'} ({c.conversation_id}, {c.message_count} msgs)",
            "value": c.conversation_id,
            "enabled": c.conversation_id in current or c.conversation_id in configured,
        }
        for c in conversations
        if c.conversation_id not in configured
    ]
    if not choices:
        print("Every ledger conversation is already tracked via settings.toml.")
        return 0

    print("Use arrow keys to navigate, SPACE to toggle, ENTER to confirm.")
    selected = await inquirer.checkbox(
        message="Select conversations to TRACK:",
        choices=choices,
        cycle=True,
    ).execute_async()

    names = {c.conversation_id: c.display_name for c in conversations}
    updated = {cid: current.get(cid) or names.get(cid, "") for cid in selected}
    # Keep file entries that are not in the ledger yet.
    ledger_ids = {c.conversation_id for c in conversations}
    updated.update({cid: label for cid, label in current.items() if cid not in ledger_ids})
    if updated == current:
        print("No changes.")
        return 0
    save_tracked_file(path, updated)
    print(f"Saved {len(updated)} tracked conversation(s) to {path}")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wa-recap-tracked",
        description="Manage the conversations wa-recap ingests.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=_DEFAULT_CONFIG_PATH,
        help="Path to settings.toml (default: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List ledger conversations")
    sub.add_parser("show", help="Show the effective tracked set")
    add = sub.add_parser("add", help="Track a conversation id")
    add.add_argument("conversation_id")
    add.add_argument("--label", default="")
    remove = sub.add_parser("remove", help="Stop tracking a conversation id")
    remove.add_argument("conversation_id")
    sub.add_parser("select", help="Pick tracked conversations interactively")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.command == "list":
        return cmd_list(config)
    if args.command == "show":
        return cmd_show(config)
    if args.command == "add":
        return cmd_add(config, args.conversation_id, args.label)
    if args.command == "remove":
        return cmd_remove(config, args.conversation_id)
    return asyncio.run(_select_interactive(config))


def run() -> None:
    """Synchronous entry point (console script)."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    sys.exit(main())


if __name__ == "__main__":
    run()
