"""
Run scheduled billing jobs from the command line (system cron, CI, local dev).

    python run_jobs.py billing
    python run_jobs.py dunning --at 2026-01-31T00:00:00
"""
import argparse
import json
import sys

from app import create_app
from services.billing_jobs import JOBS, run_job
from services.dates import parse_dt


def main():
    parser = argparse.ArgumentParser(description="Run a scheduled billing job.")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run.")
    parser.add_argument(
        "--at",
        default=None,
        help="Treat this ISO-8601 UTC time as 'now' (defaults to the current time).",
    )
    args = parser.parse_args()

    try:
        now = parse_dt(args.at)
    except ValueError:
        print(f"ERROR: --at is not an ISO-8601 date: {args.at}", file=sys.stderr)
        sys.exit(2)

    app = create_app()
    with app.app_context():
        result = run_job(args.job, now)
    print(json.dumps(result, indent=2, default=str))
    if result.get("errors"):
        sys.exit(1)


if __name__ == "__main__":
    main()
