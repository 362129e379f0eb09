#!/usr/bin/env python3
"""
Infer driver/vehicle assignments from trusted attributions.

Usage:
    python scripts/infer_assignments.py
    python scripts/infer_assignments.py --dry-run
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from correlation.assignments import infer_vehicle_assignments
from correlation.database import SessionLocal, init_db


def main():
    parser = argparse.ArgumentParser(
        description="Infer primary and temporary vehicle assignments"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be created without writing",
    )
    parser.add_argument(
        "--ongoing-days",
        type=int,
        default=30,
        help="Leave primaries open-ended when active within this many days",
    )

    args = parser.parse_args()

    init_db()
    db = SessionLocal()

    try:
        result = infer_vehicle_assignments(
            db, dry_run=args.dry_run, ongoing_days=args.ongoing_days
        )

        print("=" * 60)
        print(f"ASSIGNMENT INFERENCE ({'DRY RUN' if args.dry_run else 'LIVE'})")
        print("=" * 60)
        print(f"Driver/vehicle pairs examined: {result.pairs_examined}")
        print(f"Primary assignments:           {result.primary_created}")
        print(f"Temporary assignments:         {result.temporary_created}")
        print(f"Extended to ongoing:           {result.extended_to_ongoing}")
        print(f"Skipped (already exist):       {result.skipped_existing}")

    finally:
        db.close()


if __name__ == "__main__":
    main()
