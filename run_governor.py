#!/usr/bin/env python3
"""Intent Governor - Command-line inspection of a governed workspace.

Reads the same orchestration files the engine uses:
- list the declared intents
- check whether an intent may write a path
- render the intent context block an agent receives
- summarize or verify the audit ledger

Usage:
    python run_governor.py --workspace ./repo list-intents
    python run_governor.py --workspace ./repo check-scope INT-001 src/api/users.ts
    python run_governor.py --workspace ./repo intent-context INT-001
    python run_governor.py --workspace ./repo ledger summary
    python run_governor.py --workspace ./repo ledger verify
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from intent_kernel import (
    AuditLedger,
    GovernanceConfig,
    IntentCatalog,
    IntentCatalogError,
    ScopeMatcher,
    build_intent_context,
    intent_protocol_section,
    normalize_target,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("run_governor")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Intent Governor - Inspect intents, scopes and the audit ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Which intents are declared?
    python run_governor.py --workspace ./my_repo list-intents

    # May INT-001 write this file?
    python run_governor.py --workspace ./my_repo check-scope INT-001 src/api/users.ts

    # Ledger health
    python run_governor.py --workspace ./my_repo ledger verify
        """,
    )

    parser.add_argument(
        "--workspace",
        type=Path,
        default=Path("."),
        help="Path to the governed workspace (default: .)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML file with GovernanceConfig overrides",
    )
    parser.add_argument(
        "--orchestration-dir",
        default=None,
        help="Orchestration directory (default: <workspace>/.orchestration)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list-intents", help="List declared intents")

    check = sub.add_parser("check-scope", help="Check a path against an intent's owned scope")
    check.add_argument("intent_id", help="Intent to check (e.g. INT-001)")
    check.add_argument("path", help="Target path, relative to the workspace or absolute")

    context = sub.add_parser("intent-context", help="Render the <intent_context> block for an intent")
    context.add_argument("intent_id", help="Intent to render")

    sub.add_parser("protocol", help="Print the handshake protocol prompt section")

    ledger = sub.add_parser("ledger", help="Inspect the audit ledger")
    ledger.add_argument(
        "action",
        choices=["summary", "rejections", "verify"],
        help="summary: counts; rejections: denied attempts; verify: fail on corrupt lines",
    )

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> GovernanceConfig:
    """Build the config from defaults, an optional YAML file, then flags."""
    data: dict[str, Any] = {}
    if args.config:
        loaded = yaml.safe_load(args.config.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {args.config} must contain a mapping")
        data.update(loaded)
    data["workspace_root"] = str(args.workspace)
    if args.orchestration_dir:
        data["orchestration_dir"] = args.orchestration_dir
    if args.verbose:
        data["verbose"] = True
        data["log_level"] = "DEBUG"
    return GovernanceConfig.from_dict(data)


def load_catalog(config: GovernanceConfig) -> IntentCatalog:
    return IntentCatalog.load(
        config.orchestration_path,
        intents_file=config.intents_file,
        ignore_file=config.ignore_file,
    )


def cmd_list_intents(config: GovernanceConfig) -> int:
    catalog = load_catalog(config)
    for intent in catalog.all():
        print(f"{intent.id}\t{intent.status.value}\t{intent.name}")
        for pattern in intent.owned_scope:
            print(f"    {pattern}")
    return 0


def cmd_check_scope(config: GovernanceConfig, intent_id: str, path: str) -> int:
    """Exit 0 if authorized, 1 if not, 2 for an unknown intent."""
    catalog = load_catalog(config)
    intent = catalog.get(intent_id)
    if intent is None:
        logger.error(f"Unknown intent: {intent_id}")
        logger.error(f"Available: {', '.join(catalog.ids())}")
        return 2

    target = normalize_target(path, config.workspace_path)
    matcher = ScopeMatcher(catalog)
    authorized = target.within_workspace and matcher.is_authorized(intent, target.relative)
    result = {
        "intent_id": intent.id,
        "target_file": target.relative,
        "within_workspace": target.within_workspace,
        "ignored": catalog.is_ignored(target.relative),
        "matched_pattern": matcher.matching_pattern(intent, target.relative) if target.within_workspace else None,
        "authorized": authorized,
        "allowed_scope": list(intent.owned_scope),
    }
    print(json.dumps(result, indent=2))
    return 0 if authorized else 1


def cmd_intent_context(config: GovernanceConfig, intent_id: str) -> int:
    catalog = load_catalog(config)
    intent = catalog.get(intent_id)
    if intent is None:
        logger.error(f"Unknown intent: {intent_id}")
        return 2
    print(build_intent_context(intent))
    return 0


def cmd_protocol(config: GovernanceConfig) -> int:
    orchestration = Path(config.orchestration_dir)
    print(intent_protocol_section(
        intents_path=str(orchestration / config.intents_file),
        ledger_path=str(orchestration / config.ledger_file),
    ))
    return 0


def cmd_ledger(config: GovernanceConfig, action: str) -> int:
    ledger = AuditLedger(config.ledger_path)
    if action == "rejections":
        for record in ledger.get_rejections():
            print(record.to_json())
        return 0

    summary = ledger.get_summary()
    summary["ledger_path"] = str(config.ledger_path)
    print(json.dumps(summary, indent=2))
    if action == "verify" and summary["corrupt_lines"]:
        logger.error(f"Ledger has {summary['corrupt_lines']} corrupt line(s)")
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.workspace.exists():
        logger.error(f"Workspace not found: {args.workspace}")
        return 1

    try:
        config = load_config(args)
        if args.command == "list-intents":
            return cmd_list_intents(config)
        if args.command == "check-scope":
            return cmd_check_scope(config, args.intent_id, args.path)
        if args.command == "intent-context":
            return cmd_intent_context(config, args.intent_id)
        if args.command == "protocol":
            return cmd_protocol(config)
        if args.command == "ledger":
            return cmd_ledger(config, args.action)
    except (IntentCatalogError, ValueError, OSError) as e:
        logger.error(str(e))
        return 1

    logger.error(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
