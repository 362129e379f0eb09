#!/usr/bin/env python3
"""
Run a batch correlation over a scope.

Usage:
    python scripts/run_correlation.py --kind driver --date-from 2025-01-01 --date-to 2025-01-31
    python scripts/run_correlation.py --kind trip --fleet "Stevemacs" --min-confidence 60
    python scripts/run_correlation.py --kind trip --clear-existing --workers 8
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from correlation.database import init_db
from correlation.errors import RunFailure
from correlation.orchestrator import BatchOrchestrator, RunScope


def main():
    parser = argparse.ArgumentParser(
        description="Correlate drivers to telemetry events or trips to deliveries"
    )
    parser.add_argument(
        "--kind",
        choices=["driver", "trip"],
        required=True,
        help="driver = driver attribution, trip = trip-delivery correlation",
    )
    parser.add_argument("--date-from", help="Start date (YYYY-MM-DD)")
    parser.add_argument("--date-to", help="End date (YYYY-MM-DD), inclusive")
    parser.add_argument("--fleet", help="Restrict to one fleet")
    parser.add_argument(
        "--vehicle",
        action="append",
        default=[],
        help="Restrict to a vehicle id (repeatable)",
    )
    parser.add_argument(
        "--min-confidence",
        type=int,
        default=0,
        help="Only store correlations at or above this confidence (0-100)",
    )
    parser.add_argument(
        "--clear-existing",
        action="store_true",
        help="Delete unverified correlations in scope before recomputing",
    )
    parser.add_argument("--workers", type=int, help="Worker threads")
    parser.add_argument("--limit", type=int, help="Maximum subjects to process")

    args = parser.parse_args()

    init_db()

    try:
        scope = RunScope.build(
            args.kind,
            args.date_from,
            args.date_to,
            fleet=args.fleet,
            vehicle_ids=args.vehicle,
            limit=args.limit,
        )
        orchestrator = BatchOrchestrator(worker_count=args.workers)
        run_id = orchestrator.start_run(
            scope,
            min_confidence=args.min_confidence,
            clear_existing=args.clear_existing,
        )
    except RunFailure as e:
        print(f"Run not started: {e}")
        sys.exit(2)

    run = orchestrator.get_run(run_id)

    print("=" * 60)
    print(f"CORRELATION RUN {run.id}")
    print("=" * 60)
    print(f"Kind:                {run.kind.value}")
    print(f"Status:              {run.status.value}{' (cancelled)' if run.cancelled else ''}")
    print(f"Subjects processed:  {run.subjects_processed}/{run.subjects_total}")
    print(f"Subjects matched:    {run.subjects_matched}")
    print(f"Records written:     {run.records_written} ({run.records_unchanged} unchanged)")
    if run.clear_existing:
        print(f"Records cleared:     {run.records_cleared}")
    print(f"High confidence:     {run.high_confidence_count}")
    print(f"Needs review:        {run.needs_review_count}")
    print(f"Skipped (verified):  {run.skipped_verified_count}")
    print(f"Failed:              {run.failed_count}")
    print(f"Average confidence:  {run.avg_confidence}")
    print(f"Elapsed:             {run.elapsed_seconds}s")
    if run.error_message:
        print(f"Error:               {run.error_message}")
    print("=" * 60)

    if run.status.value == "failed":
        sys.exit(1)


if __name__ == "__main__":
    main()
