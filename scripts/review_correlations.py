#!/usr/bin/env python3
"""
Review and audit stored correlations.

Usage:
    python scripts/review_correlations.py --orphans
    python scripts/review_correlations.py --coverage --kind trip
    python scripts/review_correlations.py --trace <subject_id> --kind driver
    python scripts/review_correlations.py --export-queue
    python scripts/review_correlations.py --apply-decisions data/correlation_review_queue.csv
    python scripts/review_correlations.py --verify <correlation_id> --verifier jsmith --decision confirm
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from correlation.auditor import QualityAuditor
from correlation.database import SessionLocal, init_db
from correlation.errors import CorrelationError
from correlation.orchestrator import parse_kind


def print_orphans(auditor: QualityAuditor):
    report = auditor.orphan_report()
    print("=" * 60)
    print("UNRESOLVED TELEMETRY SOURCES")
    print("=" * 60)
    for group in report.groups:
        print(
            f"{group.source:<12} {group.identifier:<24} "
            f"{group.event_count:>6} events  {group.first_seen} -> {group.last_seen}"
        )
    print(f"\nTotal orphan events: {report.total_orphan_events}")
    print(f"Trips with no delivery correlation: {report.uncorrelated_trips}")


def main():
    parser = argparse.ArgumentParser(description="Audit and review correlations")
    parser.add_argument("--kind", choices=["driver", "trip"], help="Correlation kind")
    parser.add_argument("--orphans", action="store_true", help="Show the orphan report")
    parser.add_argument("--coverage", action="store_true", help="Show the coverage report")
    parser.add_argument("--trace", metavar="SUBJECT_ID", help="Near-miss trace for a subject")
    parser.add_argument("--export-queue", action="store_true", help="Export the review queue to CSV")
    parser.add_argument("--output", type=Path, help="Path for --export-queue")
    parser.add_argument("--apply-decisions", type=Path, metavar="CSV", help="Apply reviewed CSV")
    parser.add_argument("--verify", metavar="CORRELATION_ID", help="Verify one correlation")
    parser.add_argument("--verifier", help="Name of the reviewer")
    parser.add_argument("--decision", choices=["confirm", "reject"], help="Verification decision")
    parser.add_argument("--notes", help="Verification notes")

    args = parser.parse_args()
    kind = parse_kind(args.kind) if args.kind else None

    init_db()
    db = SessionLocal()

    try:
        auditor = QualityAuditor(db)

        if args.orphans:
            print_orphans(auditor)

        if args.coverage:
            print(json.dumps(auditor.coverage_report(kind), indent=2))

        if args.trace:
            if kind is None:
                parser.error("--trace requires --kind")
            print(json.dumps(auditor.near_miss_trace(kind, args.trace), indent=2, default=str))

        if args.export_queue:
            path = auditor.export_review_queue(args.output, kind)
            print(f"Review queue exported to: {path}")

        if args.apply_decisions:
            results = auditor.apply_review_decisions(args.apply_decisions)
            print(f"Decisions applied: {results}")

        if args.verify:
            if not args.verifier or not args.decision:
                parser.error("--verify requires --verifier and --decision")
            try:
                record = auditor.store.verify(args.verify, args.verifier, args.decision, args.notes)
            except CorrelationError as e:
                print(f"Verification failed: {e}")
                sys.exit(1)
            assessment = auditor.assess_quality(record)
            print(f"{record.id}: {record.verification_decision.value} by {record.verified_by}")
            for line in assessment.recommendations:
                print(f"  - {line}")

    finally:
        db.close()


if __name__ == "__main__":
    main()
