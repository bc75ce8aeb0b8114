# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""CLI entry point for memory-bank.

Usage:
    memory-bank validate-backup FILE [--checksum HEX] [--key SECRET]
    memory-bank inspect-backup FILE
    memory-bank show-config [--config PATH]
    memory-bank --version
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml

from memory_bank import __version__
from memory_bank.backup.envelope import (
    checksums_match,
    compute_checksum,
    decode_envelope,
    parse_memories,
    summarize,
    validate_structure,
)
from memory_bank.config import config_to_dict, load_config
from memory_bank.exceptions import IntegrityError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memory-bank",
        description="Memory Bank - memory lifecycle and retrieval engine",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command")

    # Validate a backup file
    validate_parser = subparsers.add_parser(
        "validate-backup",
        help="Check the structure and checksum of a backup file",
    )
    validate_parser.add_argument("file", type=Path, help="Backup file")
    validate_parser.add_argument(
        "--checksum",
        help="Expected checksum; compared against the file when given",
    )
    validate_parser.add_argument(
        "--key",
        help="Checksum key for backups written with encryption enabled",
    )

    # Inspect a backup file
    inspect_parser = subparsers.add_parser(
        "inspect-backup",
        help="Print a summary of a backup file",
    )
    inspect_parser.add_argument("file", type=Path, help="Backup file")

    # Show configuration
    config_parser = subparsers.add_parser(
        "show-config",
        help="Print the effective configuration as YAML",
    )
    config_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: built-in defaults)",
    )

    return parser


def validate_backup(path: Path, expected: Optional[str] = None, key: Optional[str] = None) -> int:
    """Print a validation report; return 0 when the file is valid."""
    try:
        data = path.read_bytes()
    except OSError as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return 2

    checksum = compute_checksum(data, key)
    errors: list[str] = []
    if expected is not None and not checksums_match(expected, checksum):
        errors.append("Checksum mismatch - file may be corrupted")

    try:
        envelope = decode_envelope(data)
    except IntegrityError as e:
        errors.append("Invalid backup file structure")
        errors.extend(e.errors)
    else:
        problems = validate_structure(envelope)
        if problems:
            errors.append("Invalid backup file structure")
            errors.extend(problems)
        else:
            _, failed = parse_memories(envelope)
            errors.extend(f"Memory {label} is invalid" for label in failed)

    print(f"File:     {path}")
    print(f"Size:     {len(data)} bytes")
    print(f"Checksum: {checksum}")
    if errors:
        print("Status:   INVALID")
        for error in errors:
            print(f"  - {error}")
        return 1
    print("Status:   VALID")
    return 0


def inspect_backup(path: Path) -> int:
    try:
        envelope = decode_envelope(path.read_bytes())
    except (OSError, IntegrityError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        return 2
    print(json.dumps(summarize(envelope), indent=2, default=str))
    return 0


def show_config(path: Optional[Path]) -> int:
    config = load_config(path)
    print(yaml.safe_dump(config_to_dict(config), sort_keys=False), end="")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "validate-backup":
        return validate_backup(args.file, expected=args.checksum, key=args.key)
    if args.command == "inspect-backup":
        return inspect_backup(args.file)
    if args.command == "show-config":
        return show_config(args.config)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
