#!/usr/bin/env python3
"""
Operator CLI for redeem codes.

Usage:
  manage_codes.py add <code>          Add a new redeem code
  manage_codes.py add-batch <file>    Add codes from a file (one per line)
  manage_codes.py list                List all codes with status
  manage_codes.py stats               Show summary statistics
  manage_codes.py allowlist           List allow-listed pubkeys
  manage_codes.py zap <note> [sats]   Zap a note once (needs daemon settings)
  manage_codes.py repost <note>       Repost a note once (needs daemon settings)
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from allowlist import AllowList
from codes import Ledger
from config import load_paths, load_settings
from errors import ConfigurationInvalid, DuplicateCode, RewardError
from relay import RelayPool, decode_event_id, load_private_key
from rewards import Reposter
from zaps import build_zapper


def _ledger() -> Ledger:
    return Ledger(load_paths().codes_file)


def cmd_add(args) -> int:
    ledger = _ledger()
    try:
        fp = ledger.add(args.code)
    except (DuplicateCode, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Code added. Fingerprint: {fp}")
    return 0


def cmd_add_batch(args) -> int:
    path = Path(args.file)
    try:
        lines = path.read_text("utf-8").splitlines()
    except OSError as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return 1
    ledger = _ledger()
    added, total, skipped = ledger.add_batch(lines)
    for line, reason in skipped:
        print(f'  Skipped "{line}": {reason}')
    print(f"Added {added}/{total} codes to {ledger.path}")
    return 0


def cmd_list(args) -> int:
    entries = _ledger().entries()
    if not entries:
        print("No codes found.")
        return 0
    for c in entries:
        if c.used:
            used_at = c.used_at.isoformat() if c.used_at else "?"
            status = f"USED by {(c.used_by or '')[:12]}... at {used_at}"
        else:
            status = "AVAILABLE"
        retry = " [PAYMENT RETRY pending]" if c.payment_failed else ""
        print(f"  {c.fingerprint[:16]}... [{status}]{retry}")
    return 0


def cmd_stats(args) -> int:
    s = _ledger().stats()
    print(f"Total: {s.total} | Used: {s.used} | Available: {s.available} | Payment retries pending: {s.pending_retry}")
    return 0


def cmd_allowlist(args) -> int:
    entries = AllowList(load_paths().whitelist_file).entries()
    if not entries:
        print("Allow-list is empty.")
        return 0
    for e in entries:
        print(f"  {e.identity} added {e.added_at.isoformat()} ({e.reason})")
    return 0


async def _zap(note: str, sats: Optional[int]) -> str:
    settings = load_settings()
    if not settings.nwc_url:
        raise ConfigurationInvalid("NWC_URL is required to zap")
    key = load_private_key(settings.bot_private_key)
    zapper = build_zapper(settings, RelayPool(settings.relays), key)
    outcome = await zapper.zap_event_id(decode_event_id(note), sats)
    if not outcome.confirmed:
        return "unconfirmed (no wallet reply before timeout)"
    return f"preimage {outcome.preimage}"


async def _repost(note: str) -> str:
    settings = load_settings()
    key = load_private_key(settings.bot_private_key)
    return await Reposter(RelayPool(settings.relays), key).repost_event_id(decode_event_id(note))


def cmd_zap(args) -> int:
    try:
        result = asyncio.run(_zap(args.note, args.sats))
    except (RewardError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Zap complete: {result}")
    return 0


def cmd_repost(args) -> int:
    try:
        repost_id = asyncio.run(_repost(args.note))
    except (RewardError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Repost published: {repost_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="nostreward-codes", description="Manage Nostreward redeem codes.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add", help="add a new redeem code")
    p.add_argument("code")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("add-batch", help="add codes from a file (one per line)")
    p.add_argument("file")
    p.set_defaults(func=cmd_add_batch)

    sub.add_parser("list", help="list all codes with status").set_defaults(func=cmd_list)
    sub.add_parser("stats", help="show summary statistics").set_defaults(func=cmd_stats)
    sub.add_parser("allowlist", help="list allow-listed pubkeys").set_defaults(func=cmd_allowlist)

    p = sub.add_parser("zap", help="zap a note (hex, note1 or nevent1 id)")
    p.add_argument("note")
    p.add_argument("sats", nargs="?", type=int, default=None)
    p.set_defaults(func=cmd_zap)

    p = sub.add_parser("repost", help="repost a note (hex, note1 or nevent1 id)")
    p.add_argument("note")
    p.set_defaults(func=cmd_repost)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except RewardError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
