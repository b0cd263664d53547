#!/usr/bin/env python3
"""
Run the manager dispatch loop and stale-operation recovery on a schedule.

    python scripts/run_dispatch_loop.py            # run until Ctrl+C
    python scripts/run_dispatch_loop.py --once     # one pass, print the result
"""

import argparse
import json
import sys
from pathlib import Path

# Repository root on the path so `src` and `util` import as packages
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core import config
from src.core.heartbeat import register_default_tasks, start, stop


def main():
    """Main entry point for the dispatch loop script."""
    parser = argparse.ArgumentParser(description="ClawControl manager dispatch loop")
    parser.add_argument("--once", action="store_true", help="Run a single dispatch pass and exit")
    parser.add_argument("--dry-run", action="store_true", help="With --once, report without assigning")
    parser.add_argument("--limit", type=int, default=None, help="With --once, planned work orders to scan")
    args = parser.parse_args()

    if args.once:
        from src.core.dispatcher import run_dispatch_pass

        result = run_dispatch_pass(limit=args.limit, dry_run=args.dry_run, trigger="manual")
        print(json.dumps(result.to_dict(), indent=2, default=str))
        sys.exit(0 if not result.failures else 1)

    try:
        if not config.is_dispatch_enabled():
            print("❌ Dispatch loop requires DISPATCH_ENABLED=true")
            sys.exit(1)

        issues = config.validate_dispatch_config()
        if issues:
            print(f"❌ Invalid dispatch configuration: {issues}")
            sys.exit(1)

        register_default_tasks()
        print(f"🏃 Dispatch every {config.DISPATCH_INTERVAL_SEC}s, "
              f"stale recovery every {config.STALE_RECOVERY_INTERVAL_SEC}s")

        start()

    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
        stop()


if __name__ == "__main__":
    main()
