#!/usr/bin/env python3
"""Return an installed system to the uninstalled state.

The installation marker and the engine selection file are copied into a
timestamped folder under INSTALL_BACKUP_DIR and then deleted. Database
contents are never touched.

Usage:
    python scripts/clean_install.py            # asks for confirmation
    python scripts/clean_install.py --yes      # no prompt
    python scripts/clean_install.py --dry-run  # show what would be removed

Environment Variables:
    ADMINFLOW_DATA_DIR: Root for relative state files (default: current directory)
    INSTALL_BACKUP_DIR: Where the copies go (default: backups/install)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def clean(backup_dir: Path | None = None, dry_run: bool = False) -> dict:
    # Import here to avoid loading config before argument parsing
    from adminflow.service.runtime import get_runtime

    runtime = get_runtime()
    gate = runtime.installation
    target = backup_dir or runtime.settings.resolve_path(runtime.settings.install_backup_dir)
    if dry_run:
        present = [
            str(path)
            for path in (gate.marker_path, runtime.config_store.path)
            if path.exists()
        ]
        return {"removed": present, "backupLocation": str(target), "dryRun": True}
    return gate.clean(target)


def main():
    parser = argparse.ArgumentParser(
        description="Clean the AdminFlow installation state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--backup-dir", type=Path, default=None, help="Override INSTALL_BACKUP_DIR")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.yes and not args.dry_run:
        answer = input("This resets the system to the uninstalled state. Continue? [y/N] ")
        if answer.strip().lower() not in {"y", "yes"}:
            print("Aborted.")
            sys.exit(1)

    try:
        result = clean(args.backup_dir, args.dry_run)
    except OSError as e:
        print(f"Error: {e}")
        sys.exit(1)

    prefix = "[DRY RUN] Would remove" if args.dry_run else "Removed"
    if not result["removed"]:
        print("Nothing to clean: no installation marker or engine config found.")
        return
    for path in result["removed"]:
        print(f"{prefix}: {path}")
    if result.get("backupLocation"):
        print(f"Backup: {result['backupLocation']}")


if __name__ == "__main__":
    main()
